import re
import hashlib
import unicodedata
from difflib import SequenceMatcher
from pathlib import Path
from typing import List, Optional, Tuple

import yaml


# Extensions treated as grid images when scanning the grid, backup and override folders.
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")


# ==========================
# Callbacks (log / progress)
# ==========================
def emit_log(callbacks, msg: str):
    if callbacks is None:
        return
    # Handle dict-style callbacks
    if isinstance(callbacks, dict):
        if "log" in callbacks and callable(callbacks["log"]):
            try:
                callbacks["log"](msg)
            except Exception:
                pass
    # Handle object-style callbacks
    elif hasattr(callbacks, "log"):
        try:
            callbacks.log.emit(msg)
        except Exception:
            pass

def emit_progress(callbacks, done: int, total: int):
    if callbacks is None:
        return
    if isinstance(callbacks, dict):
        if "progress" in callbacks and callable(callbacks["progress"]):
            try:
                callbacks["progress"](done, total)
            except Exception:
                pass
    elif hasattr(callbacks, "progress"):
        try:
            callbacks.progress.emit(done, total)
        except Exception:
            pass


# ==========================
# Utilities
# ==========================
def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)

def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()

def load_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}

def norm_key(s: str) -> str:
    return re.sub(r"[^a-z0-9]+", "", (s or "").lower())

def is_image_path(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS

def normalize_extension(ext: str) -> str:
    """'.JPEG' / 'jpeg' -> '.jpg'; always lower-case with a leading dot."""
    ext = (ext or "").strip().lower()
    if not ext:
        return ""
    if not ext.startswith("."):
        ext = "." + ext
    if ext == ".jpeg":
        return ".jpg"
    return ext


def name_pattern(game_name: str, file_suffix: str) -> Optional[re.Pattern]:
    """
    Case-insensitive file name pattern for override images named after a game.

    Runs of non-word characters in the name match anything, so
    "Half-Life 2: Episode One" matches "half life 2 episode one.cover.png".
    """
    parts = [p for p in re.split(r"\W+", game_name or "") if p]
    if not parts:
        return None
    body = ".*".join(re.escape(p) for p in parts)
    return re.compile(rf"{body}{re.escape(file_suffix)}\.[^.]+", re.IGNORECASE)


# ==========================
# Title normalization / fuzzy matching
# ==========================
def normalize_for_search(name: str) -> str:
    """
    Normalize a game title for search - strips trademark symbols and accents,
    replaces punctuation with spaces.
    """
    normalized = unicodedata.normalize('NFD', name or "")
    ascii_name = ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')

    replacements = {
        '&': 'and',
        '™': '',
        '®': '',
        '©': '',
        '’': "'",
        '–': '-',
        '—': '-',
    }
    for old, new in replacements.items():
        ascii_name = ascii_name.replace(old, new)

    # Keep apostrophes and hyphens, they are part of many names
    ascii_name = re.sub(r"[^\w\s'-]", ' ', ascii_name)
    return re.sub(r'\s+', ' ', ascii_name).strip()


SEQUEL_INDICATORS = {
    '2', '3', '4', '5', '6', '7', '8', '9', '10',
    'ii', 'iii', 'iv', 'v', 'vi', 'vii', 'viii', 'ix', 'x',
    'trilogy', 'collection', 'remastered', 'remake', 'definitive',
}


def fuzzy_match_title(search_term: str, database_titles: List[str], threshold: float = 0.6) -> List[Tuple[str, float]]:
    """
    Fuzzy match a search term against catalog titles.
    Returns list of (title, score) tuples sorted by score descending.
    """
    if not search_term or not database_titles:
        return []

    search_norm = normalize_for_search(search_term).lower()
    search_tokens = set(re.findall(r'[a-z0-9]+', search_norm))
    search_sequel = search_tokens & SEQUEL_INDICATORS

    results = []

    for title in database_titles:
        title_norm = normalize_for_search(title).lower()
        title_tokens = set(re.findall(r'[a-z0-9]+', title_norm))

        # "Portal" must not resolve to "Portal 2" and vice versa
        if (title_tokens & SEQUEL_INDICATORS) != search_sequel:
            continue

        # Exact match (after normalization)
        if search_norm == title_norm:
            results.append((title, 1.0))
            continue

        # One contains the other
        if search_norm in title_norm or title_norm in search_norm:
            len_ratio = min(len(search_norm), len(title_norm)) / max(len(search_norm), len(title_norm))
            results.append((title, 0.85 + (len_ratio * 0.1)))
            continue

        # Token overlap (Jaccard similarity)
        if search_tokens and title_tokens:
            intersection = len(search_tokens & title_tokens)
            union = len(search_tokens | title_tokens)
            jaccard = intersection / union if union > 0 else 0
            if search_tokens <= title_tokens:
                jaccard = min(1.0, jaccard + 0.2)
            if jaccard >= threshold:
                results.append((title, jaccard))
                continue

        # Sequence matching (typos, minor differences)
        seq_ratio = SequenceMatcher(None, search_norm, title_norm).ratio()
        if seq_ratio >= threshold:
            results.append((title, seq_ratio))

    # Stable sort keeps the catalog's own order for ties
    results.sort(key=lambda x: x[1], reverse=True)
    return results
