"""Deterministic auto-resolution of executor questions.

Rules run in order and the first one that produces an answer wins: declared
default, confirmation phrasing, project-root synonyms, a single file-path
candidate, option matching. A question none of them answers is escalated.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from pm_orchestrator.clarification.models import ClarificationType

_DEFAULT_VALUE = re.compile(r"[\(\[]\s*default\s*[:=]\s*([^\)\]]+?)\s*[\)\]]", re.IGNORECASE)
_YES_NO_DEFAULT = re.compile(r"\[\s*([YyNn])\s*/\s*([YyNn])\s*\]")

_CONFIRMATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"^\s*(?:do you want (?:me )?to|shall i|should i|can i|may i|is it ok(?:ay)? to|"
        r"ok to|proceed|continue)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\((?:y/n|yes/no)\)|\b(?:y/n|yes/no)\b", re.IGNORECASE),
    re.compile(r"(?:よろしいですか|続行しますか|進めてもよいですか|実行しますか)"),
    re.compile(r"\b(?:soll ich|darf ich|möchten sie fortfahren|fortfahren\?)", re.IGNORECASE),
    re.compile(r"\b(?:voulez-vous continuer|dois-je|puis-je|continuer \?)", re.IGNORECASE),
    re.compile(r"(?:¿desea continuar|¿debo|¿puedo|¿continuar)", re.IGNORECASE),
    re.compile(r"(?:продолжить\?|хотите продолжить|мне продолжить|можно ли)", re.IGNORECASE),
)
_DESTRUCTIVE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\b(?:delete|remove|drop|overwrite|destroy|wipe|purge|truncate|erase)\b",
        re.IGNORECASE,
    ),
    re.compile(r"force[- ]push|rm -rf|reset --hard|git clean", re.IGNORECASE),
    re.compile(r"(?:削除|上書き|löschen|überschreiben|supprimer|écraser|eliminar|borrar|удалить|перезаписать)", re.IGNORECASE),
)

PROJECT_ROOT_SYNONYMS: tuple[str, ...] = (
    "project root",
    "repository root",
    "repo root",
    "root directory",
    "root folder",
    "top-level",
    "top level",
)
_LOCATION_QUESTION = re.compile(r"\b(?:where|directory|folder|location|path)\b", re.IGNORECASE)
_FILE_QUESTION = re.compile(
    r"\b(?:which|what)\s+(?:file|path|filename)|\bfile\s*(?:name|path)\b|\bwhere\b",
    re.IGNORECASE,
)
KNOWN_EXTENSIONS: tuple[str, ...] = (
    ".py",
    ".ts",
    ".tsx",
    ".js",
    ".json",
    ".yaml",
    ".yml",
    ".toml",
    ".md",
    ".txt",
    ".cfg",
    ".ini",
    ".sql",
    ".sh",
    ".html",
    ".css",
    ".go",
    ".rs",
    ".java",
)
_PATH_TOKEN = re.compile(r"[`'\"]?([\w./\\-]+)[`'\"]?")
_RECOMMENDED_OPTION = re.compile(r"\((?:recommended|default)\)", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class Resolution:
    answer: str
    rule: str


def match_option(answer: str, options: Sequence[str]) -> str | None:
    """Canonicalize ``answer`` against ``options``.

    Exact (case-insensitive) matches win, then 1-based indexes, then a unique
    prefix. An ambiguous prefix does not match.
    """

    candidate = answer.strip().lower()
    if not candidate or not options:
        return None
    for option in options:
        if option.strip().lower() == candidate:
            return option
    if candidate.isdigit():
        index = int(candidate) - 1
        if 0 <= index < len(options):
            return options[index]
        return None
    prefixed = [option for option in options if option.strip().lower().startswith(candidate)]
    if len(prefixed) == 1:
        return prefixed[0]
    return None


def is_destructive(question: str) -> bool:
    return any(pattern.search(question) for pattern in _DESTRUCTIVE_PATTERNS)


def path_candidates(text: str) -> list[str]:
    candidates: list[str] = []
    for match in _PATH_TOKEN.finditer(text):
        token = match.group(1).rstrip(".,;:")
        if not token or token in candidates:
            continue
        looks_like_path = ("/" in token or "\\" in token) and any(ch.isalnum() for ch in token)
        if looks_like_path or token.lower().endswith(KNOWN_EXTENSIONS):
            candidates.append(token)
    return candidates


class SemanticResolver:
    """Rule-based resolver; never guesses on ambiguous input."""

    def resolve(
        self,
        question: str,
        clarification_type: ClarificationType | str = ClarificationType.UNKNOWN,
        *,
        options: Sequence[str] = (),
    ) -> Resolution | None:
        kind = ClarificationType.coerce(clarification_type)
        for rule in (
            self._declared_default,
            self._confirmation,
            self._project_root,
            self._file_path,
            self._option_hint,
        ):
            resolution = rule(question, kind, options)
            if resolution is None:
                continue
            if options and resolution.rule != "option_hint":
                matched = match_option(resolution.answer, options)
                if matched is None:
                    continue
                return Resolution(answer=matched, rule=resolution.rule)
            return resolution
        return None

    @staticmethod
    def _declared_default(
        question: str,
        kind: ClarificationType,
        options: Sequence[str],
    ) -> Resolution | None:
        match = _DEFAULT_VALUE.search(question)
        if match is not None:
            return Resolution(answer=match.group(1).strip(), rule="declared_default")
        yes_no = _YES_NO_DEFAULT.search(question)
        if yes_no is not None:
            first, second = yes_no.group(1), yes_no.group(2)
            default = first if first.isupper() and not second.isupper() else None
            if default is None and second.isupper() and not first.isupper():
                default = second
            if default is not None:
                if default.lower() == "y" and is_destructive(question):
                    return None
                answer = "yes" if default.lower() == "y" else "no"
                return Resolution(answer=answer, rule="declared_default")
        return None

    @staticmethod
    def _confirmation(
        question: str,
        kind: ClarificationType,
        options: Sequence[str],
    ) -> Resolution | None:
        if not any(pattern.search(question) for pattern in _CONFIRMATION_PATTERNS):
            return None
        if is_destructive(question):
            return None
        return Resolution(answer="yes", rule="confirmation")

    @staticmethod
    def _project_root(
        question: str,
        kind: ClarificationType,
        options: Sequence[str],
    ) -> Resolution | None:
        lowered = question.lower()
        for option in options:
            if option.strip().lower() in {*PROJECT_ROOT_SYNONYMS, ".", "./"}:
                return Resolution(answer=option, rule="project_root")
        if kind != ClarificationType.TARGET_FILE_AMBIGUOUS and not _LOCATION_QUESTION.search(question):
            return None
        if any(synonym in lowered for synonym in PROJECT_ROOT_SYNONYMS):
            return Resolution(answer=".", rule="project_root")
        return None

    @staticmethod
    def _file_path(
        question: str,
        kind: ClarificationType,
        options: Sequence[str],
    ) -> Resolution | None:
        if kind != ClarificationType.TARGET_FILE_AMBIGUOUS and not _FILE_QUESTION.search(question):
            return None
        candidates = path_candidates(question)
        for option in options:
            for candidate in path_candidates(option):
                if candidate not in candidates:
                    candidates.append(candidate)
        if len(candidates) == 1:
            return Resolution(answer=candidates[0], rule="file_path")
        return None

    @staticmethod
    def _option_hint(
        question: str,
        kind: ClarificationType,
        options: Sequence[str],
    ) -> Resolution | None:
        marked = [option for option in options if _RECOMMENDED_OPTION.search(option)]
        if len(marked) == 1:
            return Resolution(answer=marked[0], rule="option_hint")
        return None
