from __future__ import annotations

import logging
import re


logger = logging.getLogger(__name__)

# cp932 is the Windows flavour of Shift_JIS most supplier exports are written in.
CANDIDATE_ENCODINGS: tuple[str, ...] = ("utf-8", "cp932", "euc_jp", "iso2022_jp")
CONTROL_CHAR_RATIO = 0.1

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_BOM = "\ufeff"


def _strip_bom(text: str) -> str:
    return text[1:] if text.startswith(_BOM) else text


def control_char_ratio(text: str) -> float:
    if not text:
        return 0.0
    return len(_CONTROL_RE.findall(text)) / len(text)


def decode_text(content: bytes, encodings: tuple[str, ...] = CANDIDATE_ENCODINGS) -> tuple[str, str]:
    """Decode undeclared-charset bytes; returns (text, encoding used)."""
    for encoding in encodings:
        try:
            text = _strip_bom(content.decode(encoding))
        except (UnicodeDecodeError, LookupError):
            continue
        if control_char_ratio(text) > CONTROL_CHAR_RATIO:
            logger.info("Rejected %s decode: too many control characters", encoding)
            continue
        return text, encoding

    fallback = encodings[0]
    logger.warning("No strict decode succeeded; falling back to lenient %s", fallback)
    return _strip_bom(content.decode(fallback, errors="replace")), fallback
