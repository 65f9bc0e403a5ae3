"""
Backups of clean (overlay-free) grid images.

Every image written to the grid folder has its clean version stored in
<grid>/originals/, named after the sha256 of the *written* image:

    <grid>/440.jpg                       image with overlays
    <grid>/originals/440 <sha256>.jpg    same image before overlays

so on the next run the written image's hash finds its clean source again, and
a file whose hash has no backup must have been put there by the user.
"""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from art_styles import ArtStyleSpec
from grid_models import ArtworkRequest, Provenance, RawArtwork, WriteFailure
from grid_utils import emit_log, ensure_dir, is_image_path, name_pattern, normalize_extension, sha256_bytes


BACKUP_DIR_NAME = "originals"
LEGACY_BACKUP_MARKER = " (original)"


class ImageState(str, Enum):
    OVERRIDE = "local override"
    LEGACY_BACKUP = "legacy backup (migrated)"
    MANUAL = "manual customization"
    BACKUP = "backup"


@dataclass
class ExistingImage:
    state: ImageState
    data: bytes
    extension: str
    path: Path

    @property
    def provenance(self) -> Provenance:
        if self.state in (ImageState.BACKUP, ImageState.LEGACY_BACKUP):
            return Provenance.BACKUP
        return Provenance.MANUAL

    def to_artwork(self) -> RawArtwork:
        return RawArtwork(
            data=self.data,
            declared_format=self.extension,
            provenance=self.provenance,
            source_label=self.state.value,
        )


def _list_images(folder: Path) -> List[Path]:
    if not folder or not folder.is_dir():
        return []
    return sorted(p for p in folder.iterdir() if p.is_file() and is_image_path(p))


class BackupManager:
    def __init__(self, grid_dir: Path, override_dir: Optional[Path] = None, callbacks=None):
        self.grid_dir = Path(grid_dir)
        self.originals_dir = self.grid_dir / BACKUP_DIR_NAME
        self.override_dir = Path(override_dir) if override_dir else None
        self.callbacks = callbacks

    # ----- naming -----
    def backup_path(self, game_id: str, style: ArtStyleSpec, overlaid_bytes: bytes, ext: str) -> Path:
        digest = sha256_bytes(overlaid_bytes)
        return self.originals_dir / f"{game_id}{style.id_suffix} {digest}{normalize_extension(ext)}"

    def canonical_path(self, game_id: str, style: ArtStyleSpec, ext: str) -> Path:
        return self.grid_dir / style.canonical_name(game_id, normalize_extension(ext))

    def canonical_images(self, game_id: str, style: ArtStyleSpec) -> List[Path]:
        stem = f"{game_id}{style.id_suffix}"
        return [p for p in _list_images(self.grid_dir) if p.stem == stem]

    def backups(self, game_id: str, style: ArtStyleSpec) -> List[Path]:
        prefix = f"{game_id}{style.id_suffix} "
        found = []
        for p in _list_images(self.originals_dir):
            if p.stem.startswith(prefix) and len(p.stem) == len(prefix) + 64:
                found.append(p)
        return found

    def find_backup(self, game_id: str, style: ArtStyleSpec, digest: str) -> Optional[Path]:
        stem = f"{game_id}{style.id_suffix} {digest}"
        for p in self.backups(game_id, style):
            if p.stem == stem:
                return p
        return None

    def _legacy_backups(self, game_id: str, style: ArtStyleSpec) -> List[Path]:
        prefix = f"{game_id}{style.id_suffix}{LEGACY_BACKUP_MARKER}"
        return [p for p in _list_images(self.grid_dir) if p.name.startswith(prefix)]

    def _override_images(self, request: ArtworkRequest) -> List[Path]:
        images = _list_images(self.override_dir) if self.override_dir else []
        if not images:
            return []
        style = request.art_style
        by_id = [p for p in images if p.stem == f"{request.game_id}{style.id_suffix}"]
        if by_id:
            return by_id
        pattern = name_pattern(request.game_name, style.file_suffix)
        if pattern is None:
            return []
        return [p for p in images if pattern.fullmatch(p.name)]

    # ----- classification -----
    def load_existing(self, request: ArtworkRequest) -> Optional[ExistingImage]:
        """
        Find an image for this game/art style that makes downloading unnecessary.

        Checked in order: override folder (by id, then by name), legacy
        "(original)" backup, then the image in the grid folder, which is
        either our own output (its hash has a backup, so the backup is
        returned) or a manual customization.
        """
        style = request.art_style

        overrides = self._override_images(request)
        if overrides:
            return self._read(ImageState.OVERRIDE, overrides[0])

        legacy = self._legacy_backups(request.game_id, style)
        if legacy:
            return self._read(ImageState.LEGACY_BACKUP, legacy[0])

        current = self.canonical_images(request.game_id, style)
        if not current:
            return None
        current_bytes = current[0].read_bytes()
        backup = self.find_backup(request.game_id, style, sha256_bytes(current_bytes))
        if backup is not None:
            return self._read(ImageState.BACKUP, backup)
        return ExistingImage(ImageState.MANUAL, current_bytes, normalize_extension(current[0].suffix), current[0])

    def _read(self, state: ImageState, path: Path) -> ExistingImage:
        return ExistingImage(state, path.read_bytes(), normalize_extension(path.suffix), path)

    # ----- writes -----
    def store(self, game_id: str, style: ArtStyleSpec, clean_bytes: bytes, clean_ext: str, overlaid_bytes: bytes) -> bool:
        """
        Save the clean image under the hash of the image that will be written.

        Returns False without writing when a backup with that hash exists.
        """
        digest = sha256_bytes(overlaid_bytes)
        if self.find_backup(game_id, style, digest) is not None:
            return False
        path = self.backup_path(game_id, style, overlaid_bytes, clean_ext)
        try:
            ensure_dir(self.originals_dir)
            path.write_bytes(clean_bytes)
        except OSError as e:
            raise WriteFailure(path, e) from e
        emit_log(self.callbacks, f"[BACKUP] Saved clean image {path.name}")
        return True

    def retire_legacy(self, existing: ExistingImage):
        """Remove a legacy backup once its clean bytes are stored under the hashed name."""
        if existing.state != ImageState.LEGACY_BACKUP:
            return
        try:
            existing.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise WriteFailure(existing.path, e) from e
        emit_log(self.callbacks, f"[BACKUP] Converted legacy backup {existing.path.name}")

    def purge_stale(self, game_id: str, style: ArtStyleSpec, image_ext: str, backup_ext: str) -> List[Path]:
        """
        Remove images and backups of this game/art style with a different
        extension than the current ones (a source switching from jpg to png
        would otherwise leave both behind).
        """
        image_ext = normalize_extension(image_ext)
        backup_ext = normalize_extension(backup_ext)
        stale = [p for p in self.canonical_images(game_id, style) if p.suffix.lower() != image_ext]
        stale += [p for p in self.backups(game_id, style) if p.suffix.lower() != backup_ext]
        removed = []
        for path in stale:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise WriteFailure(path, e) from e
            removed.append(path)
        if removed:
            emit_log(self.callbacks, f"[BACKUP] Removed {len(removed)} stale file(s) for {game_id}{style.id_suffix}")
        return removed

    def write_artwork(self, path: Path, data: bytes) -> bool:
        """Write final artwork; returns False when the file already has these bytes."""
        try:
            if path.is_file() and path.read_bytes() == data:
                return False
            ensure_dir(path.parent)
            path.write_bytes(data)
        except OSError as e:
            raise WriteFailure(path, e) from e
        return True
