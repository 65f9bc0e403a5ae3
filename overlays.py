"""
Category overlays for grid images.

Overlay files live in the overlays folder and are named after the category
plus the art style's file suffix:

    Banner: favorites.banner.png
    Cover:  favorites.cover.png
    Hero:   favorites.hero.png
    Logo:   favorites.logo.png

Static images (JPEG, PNG, single-frame WEBP/APNG) are scaled to the overlay's
size and re-encoded; animations (APNG, animated WEBP) keep their size and the
overlay is scaled to the frames instead.
"""
import gc
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from PIL import Image, ImageSequence, UnidentifiedImageError
from PIL.PngImagePlugin import Blend, Disposal

from art_styles import BANNER, COVER, ArtStyleSpec
from grid_models import CompositeResult, HardError
from grid_utils import emit_log, normalize_extension


OVERLAY_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif")

LAST_TAG_ON_TOP = "last_tag_on_top"
FIRST_TAG_ON_TOP = "first_tag_on_top"
PRECEDENCE_POLICIES = (LAST_TAG_ON_TOP, FIRST_TAG_ON_TOP)

STATIC = "static"
ANIMATED_PNG = "apng"
ANIMATED_WEBP = "webp"


def normalize_tag_name(tag: str) -> str:
    """
    Lower-case, drop trailing "s" from plurals, and replace <, > and / with -
    since they can't appear in Windows file names.
    """
    name = (tag or "").lower().rstrip("s")
    for ch in "<>/":
        name = name.replace(ch, "-")
    return name


def load_overlays(overlays_dir: Optional[Path], art_styles: Iterable[ArtStyleSpec], callbacks=None) -> Dict[str, Image.Image]:
    """Load overlay images from a folder, returning a map of normalized name -> RGBA image."""
    overlays: Dict[str, Image.Image] = {}
    if not overlays_dir or not Path(overlays_dir).is_dir():
        return overlays

    styles = list(art_styles)
    for path in sorted(Path(overlays_dir).iterdir()):
        if not path.is_file() or path.suffix.lower() not in OVERLAY_EXTENSIONS:
            continue
        try:
            with Image.open(path) as img:
                overlay = img.convert("RGBA")
        except (UnidentifiedImageError, OSError) as e:
            emit_log(callbacks, f"[OVERLAY] Skipping unreadable overlay {path.name}: {e}")
            continue

        name = path.stem
        for style in styles:
            if name.lower().endswith(style.file_suffix):
                name = normalize_tag_name(name[: -len(style.file_suffix)]) + style.file_suffix
                break
        overlays[name] = overlay

    return overlays


# ==========================
# Decoding
# ==========================
@dataclass
class DecodedArtwork:
    kind: str
    image: Image.Image
    frame_count: int

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size


def decode_artwork(data: bytes) -> DecodedArtwork:
    """
    Detect the decode path: animated WEBP, then animated PNG, then any
    single-frame image. Single-frame WEBP and APNG are treated as static.
    """
    try:
        img = Image.open(BytesIO(data))
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise HardError(f"Image could not be decoded: {e}") from e
    try:
        img.load()
    except (OSError, ValueError) as e:
        img.close()
        raise HardError(f"Image could not be decoded: {e}") from e

    frame_count = int(getattr(img, "n_frames", 1) or 1)
    if img.format == "WEBP" and frame_count > 1:
        return DecodedArtwork(ANIMATED_WEBP, img, frame_count)
    if img.format == "PNG" and frame_count > 1:
        return DecodedArtwork(ANIMATED_PNG, img, frame_count)
    return DecodedArtwork(STATIC, img, 1)


def iter_frames(img: Image.Image) -> Iterator[Tuple[Image.Image, int]]:
    """Yield (full-canvas RGBA frame, duration in ms)."""
    for frame in ImageSequence.Iterator(img):
        rgba = frame.convert("RGBA")
        # duration is only filled in once the frame is loaded
        yield rgba, int(frame.info.get("duration", 0) or 0)


# ==========================
# Encoding
# ==========================
def flatten_for_jpeg(img: Image.Image) -> Image.Image:
    """JPEG doesn't support transparency - paste onto a white background."""
    if img.mode in ("RGBA", "LA", "P"):
        if img.mode == "P":
            img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def encode_static(img: Image.Image, ext: str, jpeg_quality: int = 95) -> Tuple[bytes, str]:
    buf = BytesIO()
    if normalize_extension(ext) == ".jpg":
        flatten_for_jpeg(img).save(buf, "JPEG", quality=jpeg_quality)
        return buf.getvalue(), ".jpg"
    img.save(buf, "PNG")
    return buf.getvalue(), ".png"


def apng_disposals(frames: Sequence[Image.Image]) -> List[int]:
    """
    Every frame is a fully composited image, so nothing needs disposing. The
    APNG writer folds a frame into the previous one when the pixels and the
    disposal match, though; flipping the disposal on a repeated frame keeps
    it (a cleared region is redrawn by the identical frame anyway).
    """
    disposals = []
    previous = None
    for frame in frames:
        data = frame.tobytes()
        if data == previous and disposals[-1] == Disposal.OP_NONE:
            disposals.append(Disposal.OP_BACKGROUND)
        else:
            disposals.append(Disposal.OP_NONE)
        previous = data
    return disposals


def encode_apng(frames: Sequence[Image.Image], durations: Sequence[int], loop: int) -> bytes:
    buf = BytesIO()
    frames[0].save(
        buf,
        "PNG",
        save_all=True,
        append_images=list(frames[1:]),
        duration=list(durations),
        loop=loop,
        disposal=apng_disposals(frames),
        blend=Blend.OP_OVER,
    )
    return buf.getvalue()


def encode_animated_webp(frames: Sequence[Image.Image], durations: Sequence[int], loop: int) -> bytes:
    buf = BytesIO()
    frames[0].save(
        buf,
        "WEBP",
        save_all=True,
        append_images=list(frames[1:]),
        duration=list(durations),
        loop=loop,
        lossless=True,
        kmin=9,
        kmax=17,
    )
    return buf.getvalue()


# ==========================
# Compositor
# ==========================
class OverlayCompositor:
    def __init__(
        self,
        overlays: Dict[str, Image.Image],
        precedence: str = LAST_TAG_ON_TOP,
        convert_webp_to_apng: bool = False,
        convert_webp_to_apng_covers_banners: bool = False,
        max_animation_memory_bytes: int = 0,
        jpeg_quality: int = 95,
        callbacks=None,
    ):
        if precedence not in PRECEDENCE_POLICIES:
            raise ValueError(f"Unknown overlay precedence {precedence!r}, expected one of {PRECEDENCE_POLICIES}")
        self.overlays = overlays
        self.precedence = precedence
        self.convert_webp_to_apng = convert_webp_to_apng
        self.convert_webp_to_apng_covers_banners = convert_webp_to_apng_covers_banners
        self.max_animation_memory_bytes = max(0, int(max_animation_memory_bytes))
        self.jpeg_quality = jpeg_quality
        self.callbacks = callbacks

    def overlays_for(self, tags: Iterable[str], style: ArtStyleSpec) -> List[Image.Image]:
        """Matching overlays in drawing order; the last one ends up on top."""
        seen = set()
        found = []
        for tag in tags:
            key = normalize_tag_name(tag) + style.file_suffix
            if key in seen or key not in self.overlays:
                continue
            seen.add(key)
            found.append(self.overlays[key])
        if self.precedence == FIRST_TAG_ON_TOP:
            found.reverse()
        return found

    def wants_apng(self, style: ArtStyleSpec) -> bool:
        if self.convert_webp_to_apng:
            return True
        return self.convert_webp_to_apng_covers_banners and style.name in (COVER, BANNER)

    def fits_memory_budget(self, decoded: DecodedArtwork) -> bool:
        if self.max_animation_memory_bytes <= 0:
            return True
        width, height = decoded.size
        needed = decoded.frame_count * width * height * 4
        if needed > self.max_animation_memory_bytes:
            emit_log(self.callbacks, "[OVERLAY] WEBP animation too big to convert to APNG. Leaving WEBP.")
            return False
        if needed > self.max_animation_memory_bytes // 2:
            # free up memory for the big conversion
            gc.collect()
        return True

    def composite(self, clean_bytes: bytes, clean_ext: str, tags: Iterable[str], style: ArtStyleSpec) -> Optional[CompositeResult]:
        """
        Apply the overlays matching the tags. Returns None when nothing was
        applied and the clean image should be written unchanged.
        """
        overlays = self.overlays_for(tags, style)
        decoded = decode_artwork(clean_bytes)
        try:
            if decoded.kind == ANIMATED_WEBP:
                to_apng = self.wants_apng(style) and self.fits_memory_budget(decoded)
                if not overlays and not to_apng:
                    return None
                return self._composite_animation(decoded, overlays, to_apng=to_apng)
            if not overlays:
                return None
            if decoded.kind == ANIMATED_PNG:
                return self._composite_animation(decoded, overlays, to_apng=True)
            return self._composite_static(decoded, overlays, clean_ext)
        except (OSError, ValueError, EOFError) as e:
            raise HardError(f"Failed to apply overlay: {e}") from e
        finally:
            decoded.image.close()

    def _composite_static(self, decoded: DecodedArtwork, overlays: List[Image.Image], clean_ext: str) -> CompositeResult:
        result = decoded.image.convert("RGBA")
        for overlay in overlays:
            # Overlays come in the canonical size, so the image is scaled to fit
            if result.size != overlay.size:
                result = result.resize(overlay.size, Image.BILINEAR)
            result = Image.alpha_composite(result, overlay)
        data, ext = encode_static(result, clean_ext, self.jpeg_quality)
        emit_log(self.callbacks, f"[OVERLAY] Applied {len(overlays)} overlay(s) to single image")
        return CompositeResult(data, ext, len(overlays))

    def _composite_animation(self, decoded: DecodedArtwork, overlays: List[Image.Image], to_apng: bool) -> CompositeResult:
        size = decoded.size
        # Scale overlays to the animation so the frames don't get that huge
        scaled = [o if o.size == size else o.resize(size, Image.BILINEAR) for o in overlays]
        loop = int(decoded.image.info.get("loop", 0) or 0)

        frames: List[Image.Image] = []
        durations: List[int] = []
        try:
            for frame, duration in iter_frames(decoded.image):
                if frame.size != size:
                    canvas = Image.new("RGBA", size, (0, 0, 0, 0))
                    canvas.paste(frame, (0, 0))
                    frame = canvas
                for overlay in scaled:
                    frame = Image.alpha_composite(frame, overlay)
                frames.append(frame)
                durations.append(duration)

            if to_apng:
                data, ext = encode_apng(frames, durations, loop), ".png"
            else:
                data, ext = encode_animated_webp(frames, durations, loop), ".webp"
        finally:
            for frame in frames:
                frame.close()
            frames.clear()

        source = "APNG" if decoded.kind == ANIMATED_PNG else "WEBP"
        target = " as APNG" if to_apng and decoded.kind == ANIMATED_WEBP else ""
        if overlays:
            emit_log(self.callbacks, f"[OVERLAY] Overlay applied to {len(durations)} frames of {source}{target}")
        else:
            emit_log(self.callbacks, f"[OVERLAY] Converted {len(durations)} frames from WEBP to APNG")
        return CompositeResult(data, ext, len(overlays))
