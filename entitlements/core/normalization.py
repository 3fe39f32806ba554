"""
Product name canonicalization.

Names arrive from Stripe, from legacy shop exports and from the catalog with
different encodings of the same title ("R.D.B &#8211; No More Trouble",
"R.D.B – No More Trouble", "r.d.b - no more trouble"). ``normalize_product_name``
maps all of them to one comparison key.
"""
import html
import re
import unicodedata

# Hyphen, non-breaking hyphen, figure dash, en dash, em dash, horizontal bar,
# minus sign, two/three-em dashes, small and fullwidth hyphen-minus.
_DASH_CHARS = "\u2010\u2011\u2012\u2013\u2014\u2015\u2212\u2e3a\u2e3b\ufe58\ufe63\uff0d"
_SINGLE_QUOTES = "\u2018\u2019\u201a\u201b\u2032\u02bc`\u00b4"
_DOUBLE_QUOTES = "\u201c\u201d\u201e\u201f\u2033\u00ab\u00bb"

_TRANSLATION = str.maketrans(
    {
        **{ch: "-" for ch in _DASH_CHARS},
        **{ch: "'" for ch in _SINGLE_QUOTES},
        **{ch: '"' for ch in _DOUBLE_QUOTES},
        "\u00ad": None,  # soft hyphen
    }
)

_WHITESPACE = re.compile(r"\s+")

# "&amp;#8211;" needs two passes
_MAX_UNESCAPE_PASSES = 3


def decode_entities(value: str) -> str:
    """Decode HTML entities until the string stops changing."""
    for _ in range(_MAX_UNESCAPE_PASSES):
        decoded = html.unescape(value)
        if decoded == value:
            break
        value = decoded
    return value


def normalize_product_name(value: str) -> str:
    """
    Canonical comparison key for a product name.

    Deterministic: equal titles in any of the known encodings give equal keys.
    """
    if not value:
        return ""
    value = decode_entities(value)
    value = value.translate(_TRANSLATION)
    value = unicodedata.normalize("NFKC", value)
    value = _WHITESPACE.sub(" ", value).strip()
    return value.casefold()
