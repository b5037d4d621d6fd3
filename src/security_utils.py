"""Input hygiene for utterances: normalization, hashing and prompt injection detection."""
from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import List

INJECTION_PATTERNS: List[str] = [
    "ignore previous",
    "ignore all",
    "disregard instructions",
    "disregard system",
    "follow my instructions",
    "override the rules",
    "as assistant",
    "as system",
    "system:",
    "assistant:",
    "return this json",
    "output exactly",
    "tool_call",
    "function_call",
    "you are now",
    "pretend you are",
    "new instructions",
    "forget everything",
    "jailbreak",
]

MAX_UTTERANCE_LENGTH = 2000

# Kana voicing marks and other script-specific combiners are kept.
COMBINING_ACCENTS = re.compile(r"[\u0300-\u036f]")


def normalize_text(text: str) -> str:
    """
    Normalize text for matching.

    Handles:
    - Unicode compatibility forms (NFKC) in any script
    - Latin, Greek and Cyrillic diacritics (combining accents are dropped)
    - Case folding
    - Punctuation other than intra-word dashes
    - Multiple whitespace normalization
    """
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not COMBINING_ACCENTS.match(ch))
    folded = unicodedata.normalize("NFKC", stripped).casefold()
    folded = re.sub(r"[^\w\s-]", " ", folded)
    folded = re.sub(r"(?<!\w)-|-(?!\w)", " ", folded)
    return re.sub(r"\s+", " ", folded).strip()


def detect_prompt_injection(text: str) -> bool:
    lowered = re.sub(r"\s+", " ", text.lower())
    return any(p in lowered for p in INJECTION_PATTERNS)


def hash_text(text: str) -> str:
    """SHA-256 hex digest. The only form in which utterance text is persisted."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def truncate_utterance(text: str, limit: int = MAX_UTTERANCE_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit]
