"""Records passed between the resolver, the backup store and the compositor."""
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from art_styles import ArtStyleSpec


class Provenance(str, Enum):
    STEAM_SERVER = "steam server"
    STEAMGRIDDB = "SteamGridDB"
    IGDB = "IGDB"
    SEARCH = "search"
    BACKUP = "backup"
    MANUAL = "manual"


@dataclass(frozen=True)
class ArtworkRequest:
    game_id: str
    game_name: str
    art_style: ArtStyleSpec
    tags: Tuple[str, ...] = ()
    is_custom_game: bool = False

    @property
    def display_name(self) -> str:
        return self.game_name or f"unknown game with id {self.game_id}"


@dataclass
class RawArtwork:
    data: bytes
    declared_format: str
    provenance: Provenance
    source_label: str = ""
    url: str = ""

    def __post_init__(self):
        if not self.source_label:
            self.source_label = self.provenance.value


@dataclass(frozen=True)
class CompositeResult:
    data: bytes
    extension: str
    overlays_applied: int = 0


# ==========================
# Errors
# ==========================
class GridError(Exception):
    """Base class for per-artwork failures. Never aborts the whole run."""


class HardError(GridError):
    """Network failure, unexpected HTTP status or undecodable image bytes."""


class AuthInvalid(GridError):
    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(message or f"{provider} authorization token is missing or invalid")


class WriteFailure(GridError):
    def __init__(self, path, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write {path}: {cause}")


class SkipArtwork(GridError):
    """Official artwork exists and only missing artwork was requested."""


# ==========================
# Run report
# ==========================
@dataclass
class ReportEntry:
    game_id: str
    game_name: str
    art_style: str
    message: str = ""


@dataclass
class RunReport:
    """Categorized outcome lists, consumed by whoever prints the end-of-run summary."""
    downloaded: int = 0
    overlays_applied: int = 0
    backups_written: int = 0
    found_by: Dict[str, List[ReportEntry]] = field(default_factory=dict)
    not_found: List[ReportEntry] = field(default_factory=list)
    failed: List[ReportEntry] = field(default_factory=list)
    write_failures: List[ReportEntry] = field(default_factory=list)
    skipped: List[ReportEntry] = field(default_factory=list)
    auth_failures: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, bucket: str, request: ArtworkRequest, message: str = ""):
        entry = ReportEntry(request.game_id, request.game_name, request.art_style.name, message)
        with self._lock:
            getattr(self, bucket).append(entry)

    def record_found(self, provenance: Provenance, request: ArtworkRequest):
        entry = ReportEntry(request.game_id, request.game_name, request.art_style.name)
        with self._lock:
            self.found_by.setdefault(provenance.value, []).append(entry)

    def bump(self, counter: str, amount: int = 1):
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def found_count(self, provenance: Provenance) -> int:
        return len(self.found_by.get(provenance.value, []))
