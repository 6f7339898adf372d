import re
from dataclasses import dataclass

import structlog

from .content import ContentSet, RowStatus

logger = structlog.get_logger()

TAG_REGEX = re.compile(r"<[^>]*>")
WHITESPACE_REGEX = re.compile(r"\s+")
# Keep letters, digits, underscore, whitespace, CJK ideographs and Hangul.
DEFAULT_SPECIAL_CHARACTERS = r"[^\w\s\u4e00-\u9fff\uac00-\ud7af]"

HTML_ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
    "&apos;": "'",
}
ENTITY_REGEX = re.compile("|".join(re.escape(entity) for entity in HTML_ENTITIES))


@dataclass(frozen=True)
class NormalizeOptions:
    strip_markup: bool = True
    normalize_whitespace: bool = True
    remove_special_characters: bool = True
    special_characters: str = DEFAULT_SPECIAL_CHARACTERS

    @property
    def special_characters_regex(self) -> re.Pattern[str]:
        return _compile(self.special_characters)


_pattern_cache: dict[str, re.Pattern[str]] = {}


def _compile(pattern: str) -> re.Pattern[str]:
    compiled = _pattern_cache.get(pattern)
    if compiled is None:
        compiled = _pattern_cache[pattern] = re.compile(pattern)
    return compiled


def strip_markup(text: str) -> str:
    """
    Replaces tags with a space and decodes the common HTML entities.

    Decoding can reveal new tags (``&lt;b&gt;``) or entities (``&amp;lt;``), so
    both steps are repeated until the text is stable. Every pass that changes
    the text makes it shorter, so this terminates.
    """
    while True:
        stripped = ENTITY_REGEX.sub(
            lambda m: HTML_ENTITIES[m.group(0)], TAG_REGEX.sub(" ", text)
        )
        if stripped == text:
            return stripped
        text = stripped


def collapse_whitespace(text: str) -> str:
    return WHITESPACE_REGEX.sub(" ", text).strip()


def normalize(raw: str, options: NormalizeOptions | None = None) -> str:
    """
    Cleans a content string for embedding.

    The function is pure and idempotent: normalize(normalize(x)) == normalize(x).
    Input that is only whitespace or markup yields the empty string.
    """
    options = options or NormalizeOptions()
    if not raw or raw.isspace():
        return ""

    text = raw
    if options.strip_markup:
        text = strip_markup(text)
    if options.normalize_whitespace:
        text = collapse_whitespace(text)
    if options.remove_special_characters:
        text = options.special_characters_regex.sub(" ", text)
        if options.normalize_whitespace:
            text = collapse_whitespace(text)

    if text.isspace():
        return ""
    return text


def is_content_valid(text: str, min_length: int, max_length: int) -> bool:
    return bool(text.strip()) and min_length <= len(text) <= max_length


def prepare_rows(
    content_set: ContentSet,
    options: NormalizeOptions,
    min_length: int,
    max_length: int,
) -> int:
    """
    Fills in the normalized content of every row and flags rows whose cleaned
    text is outside [min_length, max_length] as ineligible.

    Returns:
        int: the number of rows that remain eligible for embedding.
    """
    eligible = 0
    for row in content_set:
        row.normalized_content = normalize(row.content, options)
        row.embedding = None
        if is_content_valid(row.normalized_content, min_length, max_length):
            row.status = RowStatus.PENDING
            eligible += 1
        else:
            row.status = RowStatus.INELIGIBLE

    skipped = len(content_set) - eligible
    if skipped:
        logger.info(
            "rows skipped by length bounds",
            content_set=content_set.name,
            skipped=skipped,
            min_length=min_length,
            max_length=max_length,
        )
    return eligible
