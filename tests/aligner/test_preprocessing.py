import itertools

import pytest

from langalign.aligner.content import RowStatus
from langalign.aligner.preprocessing import (
    NormalizeOptions,
    normalize,
    prepare_rows,
    strip_markup,
)
from tests.aligner.utils import content_set

ALL_OPTIONS = [
    NormalizeOptions(
        strip_markup=strip,
        normalize_whitespace=whitespace,
        remove_special_characters=special,
    )
    for strip, whitespace, special in itertools.product([True, False], repeat=3)
]

TRICKY_INPUTS = [
    "",
    "   ",
    "Book now",
    "Book now!",
    "<p>Hello&nbsp;<b>world</b></p>",
    "&lt;b&gt;bold&lt;/b&gt;",
    "&amp;lt;x&amp;gt;",
    "a  \t\n b",
    "안녕하세요, 世界!",
    "Café déjà-vu",
    "<br/>",
    "<<a>>",
    "Tom &amp; Jerry &quot;quoted&quot; &#39;single&#39;",
    "5 < 6 > 4",
]


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("", ""),
        ("   \t\n", ""),
        ("Book now", "Book now"),
        ("Book now!", "Book now"),
        ("<p>Hello&nbsp;<b>world</b></p>", "Hello world"),
        ("  <br/>  ", ""),
        ("a  \t\n b", "a b"),
        ("안녕하세요, 世界!", "안녕하세요 世界"),
        ("Café déjà-vu", "Café déjà vu"),
        ("Tom &amp; Jerry", "Tom Jerry"),
    ],
)
def test_normalize_defaults(raw: str, expected: str):
    assert normalize(raw) == expected


def test_normalize_markup_only_keeps_punctuation():
    options = NormalizeOptions(remove_special_characters=False)
    assert normalize("<i>Tom</i> &amp; Jerry!", options) == "Tom & Jerry!"


def test_normalize_without_markup_stripping_keeps_tags_as_text():
    options = NormalizeOptions(strip_markup=False, remove_special_characters=False)
    assert normalize("<b>Hi</b>", options) == "<b>Hi</b>"


def test_normalize_without_whitespace_collapse():
    options = NormalizeOptions(strip_markup=False, normalize_whitespace=False)
    assert normalize("a!b", options) == "a b"


def test_normalize_custom_special_characters():
    options = NormalizeOptions(special_characters=r"[#@]")
    assert normalize("#tag @user, ok!", options) == "tag user, ok!"


def test_strip_markup_decodes_until_stable():
    # entities that decode into tags are stripped as well
    assert strip_markup("&lt;b&gt;bold&lt;/b&gt;").strip() == "bold"
    assert strip_markup("&amp;lt;x&amp;gt;").strip() == ""


@pytest.mark.parametrize("options", ALL_OPTIONS)
@pytest.mark.parametrize("raw", TRICKY_INPUTS)
def test_normalize_is_idempotent(raw: str, options: NormalizeOptions):
    once = normalize(raw, options)
    assert normalize(once, options) == once


def test_prepare_rows_flags_rows_outside_length_bounds():
    rows = content_set(
        "reference",
        ("short", "ab"),
        ("ok", "<b>hello</b>"),
        ("long", "x" * 50),
        ("markup-only", "<br/><hr/>"),
    )

    eligible = prepare_rows(rows, NormalizeOptions(), min_length=3, max_length=10)

    assert eligible == 1
    status = {row.id: row.status for row in rows}
    assert status == {
        "short": RowStatus.INELIGIBLE,
        "ok": RowStatus.PENDING,
        "long": RowStatus.INELIGIBLE,
        "markup-only": RowStatus.INELIGIBLE,
    }
    ok = rows.by_id()["ok"]
    assert ok.normalized_content == "hello"
    assert ok.content == "<b>hello</b>"


def test_prepare_rows_resets_previous_embeddings():
    rows = content_set("reference", ("a", "hello"))
    rows.rows[0].embedding = [1.0]
    rows.rows[0].status = RowStatus.EMBEDDED

    prepare_rows(rows, NormalizeOptions(), min_length=0, max_length=100)

    assert rows.rows[0].embedding is None
    assert rows.rows[0].status == RowStatus.PENDING
