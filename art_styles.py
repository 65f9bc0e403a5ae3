"""
Art style catalog for Steam grid artwork.

Each art style maps to the suffix Steam expects after the game id in the grid
folder, the suffix used for overlay and override file names, the file name on
the Steam CDN and the high/low quality dimensions.

    BannerLQ: 460 x 215      BannerHQ: 920 x 430
    CoverLQ:  300 x 450      CoverHQ:  600 x 900
    HeroLQ:   1920 x 620     HeroHQ:   3840 x 1240
    LogoLQ:   640 x 360      LogoHQ:   1280 x 720
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple


@dataclass(frozen=True)
class ArtStyleSpec:
    name: str
    id_suffix: str
    file_suffix: str
    steam_path_segment: str
    hq_width: int
    hq_height: int
    lq_width: int
    lq_height: int

    @property
    def hq_dimensions(self) -> str:
        return f"{self.hq_width}x{self.hq_height}"

    @property
    def lq_dimensions(self) -> str:
        return f"{self.lq_width}x{self.lq_height}"

    def dimension_filters(self) -> List[str]:
        """HQ first, then LQ."""
        return [self.hq_dimensions, self.lq_dimensions]

    def canonical_name(self, game_id: str, ext: str) -> str:
        return f"{game_id}{self.id_suffix}{ext}"


BANNER = "Banner"
COVER = "Cover"
HERO = "Hero"
LOGO = "Logo"

ART_STYLES: Dict[str, ArtStyleSpec] = {
    BANNER: ArtStyleSpec(BANNER, "", ".banner", "header.jpg", 920, 430, 460, 215),
    COVER: ArtStyleSpec(COVER, "p", ".cover", "library_600x900_2x.jpg", 600, 900, 300, 450),
    HERO: ArtStyleSpec(HERO, "_hero", ".hero", "library_hero.jpg", 3840, 1240, 1920, 620),
    LOGO: ArtStyleSpec(LOGO, "_logo", ".logo", "logo.png", 1280, 720, 640, 360),
}


def get_art_style(name: str) -> ArtStyleSpec:
    """Look up a style by name, case-insensitively. Raises KeyError if unknown."""
    for key, spec in ART_STYLES.items():
        if key.lower() == (name or "").strip().lower():
            return spec
    raise KeyError(f"Unknown art style: {name!r}")


def select_art_styles(names: Iterable[str]) -> Tuple[List[ArtStyleSpec], List[str]]:
    """
    Resolve configured style names to specs, keeping catalog order.

    Returns (specs, unknown_names).
    """
    wanted = set()
    unknown = []
    for name in names:
        try:
            wanted.add(get_art_style(name).name)
        except KeyError:
            unknown.append(name)
    specs = [spec for key, spec in ART_STYLES.items() if key in wanted]
    return specs, unknown
