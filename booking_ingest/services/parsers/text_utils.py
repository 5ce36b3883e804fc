"""
Text extraction helpers shared by the platform parsers.
"""

import html
import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence, Tuple

from bs4 import BeautifulSoup

# Elements that start a new line in the plain-text rendering
BLOCK_TAGS = ["p", "div", "tr", "li", "table", "h1", "h2", "h3", "h4", "h5", "h6"]

_WS_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^0-9a-z]+")

MONEY_SYMBOLS = {
    "zl": "PLN",
    "zł": "PLN",
    "pln": "PLN",
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
}

TWO_PLACES = Decimal("0.01")


def normalize_whitespace(value: Optional[str]) -> str:
    return _WS_RE.sub(" ", value or "").strip()


def decode_html_entities(value: str) -> str:
    return html.unescape(value).replace("\u00a0", " ")


def html_soup(markup: Optional[str]) -> BeautifulSoup:
    return BeautifulSoup(markup or "", "html.parser")


def element_text(element) -> str:
    """Visible text of one element on a single line."""
    return normalize_whitespace(element.get_text(" ").replace("\u00a0", " "))


def strip_html_to_text(markup: str) -> str:
    """
    Render an HTML body as plain text.

    Block elements and <br> become line breaks; inline tags become spaces, so
    "<b>Name:</b>Jane" reads "Name: Jane" on one line.
    """
    soup = html_soup(markup)
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")
    text = soup.get_text(" ").replace("\u00a0", " ")
    lines = [normalize_whitespace(line) for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def ensure_plain_text_body(
    text_body: Optional[str],
    html_body: Optional[str],
    snippet: Optional[str],
) -> str:
    """Plain text if present, else stripped HTML, else the snippet."""
    if text_body and text_body.strip():
        return text_body
    if html_body and html_body.strip():
        return strip_html_to_text(html_body)
    return snippet or ""


def normalize_label(value: Optional[str]) -> str:
    """Sanitized, lower-cased form used for alias matching."""
    if not value:
        return ""
    folded = unicodedata.normalize("NFKC", value).lower()
    return normalize_whitespace(_NON_ALNUM_RE.sub(" ", folded))


def normalize_decimal(value, places: Decimal = TWO_PLACES) -> Optional[Decimal]:
    """
    Coerce a parsed amount to a fixed-point Decimal.

    Strings may use a comma decimal separator or thousands commas.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value.quantize(places)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return Decimal(str(value)).quantize(places)
    raw = str(value).strip().replace(" ", "").replace("\u00a0", "")
    if not raw:
        return None
    if "," in raw and "." not in raw:
        raw = raw.replace(",", ".")
    else:
        raw = raw.replace(",", "")
    try:
        return Decimal(raw).quantize(places)
    except InvalidOperation:
        return None


def currency_from_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    raw = token.strip()
    mapped = MONEY_SYMBOLS.get(raw) or MONEY_SYMBOLS.get(raw.lower())
    if mapped:
        return mapped
    if len(raw) == 3 and raw.isalpha():
        return raw.upper()
    return None


def parse_money(value: Optional[str]) -> Tuple[Optional[Decimal], Optional[str]]:
    """Parse '$12.50', 'PLN 120', '120,00 zł' into (amount, currency)."""
    if not value:
        return None, None
    match = re.search(r"([A-Za-zł$€£]{1,5})?\s*([\d][\d.,\s]*)\s*([A-Za-zł$€£]{1,5})?", value)
    if not match:
        return None, None
    amount = normalize_decimal(match.group(2).strip())
    currency = currency_from_token(match.group(1)) or currency_from_token(match.group(3))
    return amount, currency


def parse_count(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = re.search(r"(\d{1,3})", value)
    return int(match.group(1)) if match else None


def split_name(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'Jane van Doe' -> ('Jane', 'van Doe')"""
    parts = normalize_whitespace(value).split(" ") if value else []
    parts = [p for p in parts if p]
    if not parts:
        return None, None
    first = parts[0]
    last = " ".join(parts[1:]) or None
    return first, last


def truncate(value, limit: int = 120) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def extract_field(text: str, label: str, next_labels: Sequence[str] = ()) -> Optional[str]:
    """Text after `label` up to the nearest of `next_labels` (case-insensitive)."""
    lower = text.lower()
    start = lower.find(label.lower())
    if start == -1:
        return None
    rest = text[start + len(label):]
    lower_rest = rest.lower()
    ends = [i for i in (lower_rest.find(n.lower()) for n in next_labels) if i != -1]
    if ends:
        rest = rest[:min(ends)]
    return rest.strip() or None
