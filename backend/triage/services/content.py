"""
Email body extraction and cleanup.

Gmail returns bodies as base64url-encoded MIME parts. These helpers pick the
right part for each use (classification, display, recent-email previews) and
strip markup and marketing footers before the text reaches the LLM.
"""
import base64
import logging
import re
from typing import Dict, Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


FOOTER_PATTERNS = [
    re.compile(r"Unsubscribe\s*\|", re.IGNORECASE),
    re.compile(r"To stop receiving", re.IGNORECASE),
    re.compile(r"View this email in your browser", re.IGNORECASE),
    re.compile(r"This email was sent to", re.IGNORECASE),
    re.compile(r"Copyright © \d{4}", re.IGNORECASE),
    re.compile(r"All Rights Reserved", re.IGNORECASE),
    re.compile(r"Contact us at", re.IGNORECASE),
    re.compile(r"Please do not reply", re.IGNORECASE),
]

MARKETING_LINE_PATTERNS = [
    re.compile(r"Copyright (?:©|Â©).*?(?=\n|$)", re.IGNORECASE),
    re.compile(r"You are receiving this email because.*?(?=\n|$)", re.IGNORECASE),
    re.compile(r"To connect with us.*?(?=\n|$)", re.IGNORECASE),
    re.compile(r"Our mailing address.*?(?=\n|$)", re.IGNORECASE),
    re.compile(r"Unsubscribe.*?(?=\n|$)", re.IGNORECASE),
    re.compile(r"Add .* to your address book.*?(?=\n|$)", re.IGNORECASE),
]

BLOCK_TAGS = ["p", "div", "tr", "li", "table", "blockquote", "h1", "h2", "h3", "h4", "h5", "h6"]

INLINE_IMAGE_RE = re.compile(r"data:image/[^;]+;base64,[a-zA-Z0-9+/]+=*")
BLANK_LINES_RE = re.compile(r"\n\s*\n\s*\n+")


def decode_base64url(data: Optional[str]) -> str:
    """Decode a base64url string to text; returns "" when it cannot be decoded."""
    if not data:
        return ""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (ValueError, UnicodeEncodeError) as e:
        logger.warning(f"Could not decode message body: {e}")
        return ""


def _part_data(part: Dict) -> Optional[str]:
    return (part.get("body") or {}).get("data")


def _first_part(parts, mime_type: str) -> Optional[str]:
    for part in parts:
        if part.get("mimeType") == mime_type and _part_data(part):
            return decode_base64url(_part_data(part))
    return None


def extract_plain_body(message: Dict) -> str:
    """Body used for classification: payload body, else the first text/plain part."""
    payload = message.get("payload") or {}
    if _part_data(payload):
        return decode_base64url(_part_data(payload))
    return _first_part(payload.get("parts") or [], "text/plain") or ""


def _display_from_parts(parts) -> str:
    html = _first_part(parts, "text/html")
    if html:
        return html
    plain = _first_part(parts, "text/plain")
    if plain:
        return plain
    for part in parts:
        if part.get("parts"):
            nested = _display_from_parts(part["parts"])
            if nested:
                return nested
    return ""


def extract_display_content(message: Dict) -> str:
    """
    Body shown to the user.

    HTML is preferred over plain text, nested multipart trees are searched,
    and the snippet is used when no body part carries data.
    """
    payload = message.get("payload") or {}
    if _part_data(payload):
        return decode_base64url(_part_data(payload))

    content = _display_from_parts(payload.get("parts") or [])
    return content or message.get("snippet", "")


def extract_recent_content(message: Dict) -> str:
    """Payload body, else the first text/plain part, falling back to HTML only without one."""
    payload = message.get("payload") or {}
    if _part_data(payload):
        return decode_base64url(_part_data(payload))

    parts = payload.get("parts") or []
    return _first_part(parts, "text/plain") or _first_part(parts, "text/html") or ""


def _html_to_text(text: str) -> str:
    """
    Parse markup with BeautifulSoup and return its text with entities decoded.

    Images become their alt text, links become their link text and block
    elements end with a newline so line-based patterns still apply.
    """
    soup = BeautifulSoup(text, "html.parser")

    for tag in soup(["script", "style", "head"]):
        tag.decompose()

    for image in soup.find_all("img"):
        image.replace_with(image.get("alt", ""))

    for link in soup.find_all("a"):
        link.unwrap()

    for tag in soup.find_all("br"):
        tag.replace_with("\n")

    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_after("\n")

    return soup.get_text().replace("\xa0", " ")


def strip_footer(text: str) -> str:
    """Flatten markup and cut the text at the first marketing footer marker."""
    cleaned = _html_to_text(text or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    for pattern in FOOTER_PATTERNS:
        match = pattern.search(cleaned)
        # A marker at the very start means the whole mail is footer-like; keep it
        if match and match.start() > 0:
            cleaned = cleaned[:match.start()].strip()

    return cleaned


def _normalise_quote_line(line: str) -> str:
    if not line.startswith(">"):
        return line
    line = re.sub(r"\s*>\s*>\s*", "> ", line)
    return re.sub(r"^>+\s*", "> ", line)


def clean_email_content(text: str) -> str:
    """
    Turn an HTML or plain-text body into readable text for previews.

    Keeps image alt text and link text, drops marketing lines and inline
    images, and keeps reply quoting as a single "> " marker per line.
    """
    if not text:
        return ""

    text = _html_to_text(text)

    for pattern in MARKETING_LINE_PATTERNS:
        text = pattern.sub("", text)

    text = INLINE_IMAGE_RE.sub("", text)

    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.split("\n")]
    text = "\n".join(_normalise_quote_line(line) for line in lines)
    text = BLANK_LINES_RE.sub("\n\n", text)

    return text.strip()


def get_header(message: Dict, name: str) -> str:
    """Case-insensitive header lookup; returns "" when absent."""
    for header in (message.get("payload") or {}).get("headers") or []:
        if (header.get("name") or "").lower() == name.lower():
            return header.get("value", "")
    return ""


def format_for_classification(message: Dict) -> str:
    """Render a message as the user turn sent to the classifier."""
    sender = get_header(message, "from")
    subject = get_header(message, "subject")
    content = strip_footer(extract_plain_body(message))
    return f"From: {sender}\nSubject: {subject}\n\nContent:\n{content}"
