"""
Artwork sources for Steam grid images.

A SourceResolver walks an ordered list of providers (Steam CDN mirrors,
SteamGridDB, IGDB, image search) and returns the first image that downloads
and has the right orientation for the requested art style.
"""
import os
import re
import html
import time
import threading
from io import BytesIO
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote, quote_plus, urlparse

import requests
from PIL import Image, UnidentifiedImageError

from art_styles import BANNER, COVER, HERO, LOGO
from grid_models import ArtworkRequest, AuthInvalid, HardError, Provenance, RawArtwork, SkipArtwork
from grid_utils import IMAGE_EXTENSIONS, emit_log, fuzzy_match_title, normalize_extension, normalize_for_search


DEFAULT_TIMEOUT_S = 10
DEFAULT_USER_AGENT = "SteamGrid/3.0"

# Pillow format -> extension the grid folder scans pick up
GRID_FORMATS = {"JPEG": ".jpg", "PNG": ".png", "WEBP": ".webp"}

# If we don't set a browser user agent, the search page blocks us or serves
# a simple HTML page without direct image links.
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 6.3; WOW64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/39.0.2171.71 Safari/537.36"
)


# ==========================
# HTTP client (thread-local sessions)
# ==========================
class GridHttpClient:
    """
    Shared HTTP access for all providers.

    One requests.Session per worker thread; the timeout bounds connecting and
    waiting for the response headers, and each read of the body, so a slow
    but steady transfer is not cut off.
    """

    def __init__(
        self,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        user_agent: str = DEFAULT_USER_AGENT,
        session_factory: Optional[Callable[[], requests.Session]] = None,
    ):
        self.timeout_s = float(timeout_s)
        self.user_agent = user_agent
        self._session_factory = session_factory or requests.Session
        self._local = threading.local()

    def session(self) -> requests.Session:
        s = getattr(self._local, "session", None)
        if s is None:
            s = self._session_factory()
            s.headers.update({"User-Agent": self.user_agent})
            self._local.session = s
        return s

    def get(self, url: str, *, headers: Optional[dict] = None, params: Optional[dict] = None) -> requests.Response:
        try:
            return self.session().get(url, headers=headers, params=params, timeout=(self.timeout_s, self.timeout_s))
        except requests.RequestException as e:
            raise HardError(f"Request to {url} failed: {e}") from e

    def post(self, url: str, *, data=None, headers: Optional[dict] = None, params: Optional[dict] = None) -> requests.Response:
        try:
            return self.session().post(url, data=data, headers=headers, params=params, timeout=(self.timeout_s, self.timeout_s))
        except requests.RequestException as e:
            raise HardError(f"Request to {url} failed: {e}") from e

    def try_download(self, url: str, *, headers: Optional[dict] = None) -> Optional[requests.Response]:
        """Fetch a URL, returning the response only if it was positive."""
        r = self.get(url, headers=headers)
        if r.status_code == 404:
            # Some apps don't have an image and there's nothing we can do.
            return None
        if r.status_code >= 400:
            # Other errors should be reported, though.
            raise HardError(f"Failed to download image {url}: HTTP {r.status_code}")
        return r


def declared_format(content_type: str, url: str) -> str:
    """File extension for a download, from its Content-Type or else its URL."""
    mime = (content_type or "").split(";")[0].strip().lower()
    if "/" in mime:
        subtype = mime.split("/", 1)[1]
        if subtype == "octet-stream":
            # SteamGridDB's storage serves images as octet-stream
            return ".png"
        return normalize_extension(subtype)
    url_ext = os.path.splitext(urlparse(url).path)[1]
    if url_ext:
        return normalize_extension(url_ext)
    # Steam is forgiving on image extensions.
    return ".jpg"


def to_grid_format(data: bytes) -> Tuple[bytes, str]:
    """
    Extension from the format Pillow detects. Formats the grid folder doesn't
    hold (GIF, BMP, ...) are re-encoded as PNG.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            ext = GRID_FORMATS.get(img.format)
            if ext:
                return data, ext
            buf = BytesIO()
            img.convert("RGBA").save(buf, "PNG")
            return buf.getvalue(), ".png"
    except (UnidentifiedImageError, OSError) as e:
        raise HardError(f"Downloaded image could not be decoded: {e}") from e


def download_artwork(client: GridHttpClient, url: str, provenance: Provenance, headers: Optional[dict] = None) -> Optional[RawArtwork]:
    if not url:
        return None
    r = client.try_download(url, headers=headers)
    if r is None:
        return None
    final_url = getattr(r, "url", None) or url
    data = r.content
    ext = declared_format(r.headers.get("Content-Type", ""), final_url)
    if ext not in IMAGE_EXTENSIONS:
        data, ext = to_grid_format(data)
    return RawArtwork(
        data=data,
        declared_format=ext,
        provenance=provenance,
        url=final_url,
    )


# ==========================
# Aspect ratio guard
# ==========================
def image_size(data: bytes) -> Tuple[int, int]:
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as e:
        raise HardError(f"Downloaded image could not be decoded: {e}") from e


def passes_aspect_guard(art_style_name: str, width: int, height: int) -> bool:
    """Banners must be wider than tall, covers taller than wide."""
    if art_style_name == BANNER:
        return width > height
    if art_style_name == COVER:
        return height > width
    return True


# ==========================
# Circuit breaker
# ==========================
class ProviderCircuitBreaker:
    """Providers that rejected our credentials stay disabled for the rest of the run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._open: Dict[str, str] = {}

    def is_open(self, provider: str) -> bool:
        with self._lock:
            return provider in self._open

    def trip(self, provider: str, reason: str) -> bool:
        """Returns True if this call disabled the provider."""
        with self._lock:
            if provider in self._open:
                return False
            self._open[provider] = reason
            return True

    @property
    def tripped(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._open)


# ==========================
# Providers
# ==========================
class ArtworkProvider:
    name = ""
    log_tag = ""
    provenance: Provenance

    def __init__(self, client: GridHttpClient, callbacks=None):
        self.client = client
        self.callbacks = callbacks

    def supports(self, request: ArtworkRequest) -> bool:
        return True

    def try_fetch(self, request: ArtworkRequest) -> Optional[RawArtwork]:
        """Return a candidate image, or None when this provider has nothing."""
        raise NotImplementedError

    def _log(self, msg: str):
        emit_log(self.callbacks, f"[{self.log_tag}] {msg}")


# Primary URL for downloading grid images.
AKAMAI_URL_FORMAT = "https://steamcdn-a.akamaihd.net/steam/apps/{game_id}/{segment}"
# The subreddit mentions this as primary, but Akamai has more images and answers faster.
STEAM_CDN_URL_FORMAT = "https://cdn.akamai.steamstatic.com/steam/apps/{game_id}/{segment}"


class SteamCdnProvider(ArtworkProvider):
    name = "steam"
    log_tag = "STEAM"
    provenance = Provenance.STEAM_SERVER

    def __init__(self, client: GridHttpClient, only_missing_artwork: bool = False,
                 url_formats: Sequence[str] = (AKAMAI_URL_FORMAT, STEAM_CDN_URL_FORMAT), callbacks=None):
        super().__init__(client, callbacks)
        self.only_missing_artwork = only_missing_artwork
        self.url_formats = list(url_formats)

    def supports(self, request: ArtworkRequest) -> bool:
        return not request.is_custom_game

    def try_fetch(self, request: ArtworkRequest) -> Optional[RawArtwork]:
        segment = request.art_style.steam_path_segment
        for fmt in self.url_formats:
            url = fmt.format(game_id=request.game_id, segment=segment)
            artwork = download_artwork(self.client, url, self.provenance)
            if artwork is None:
                continue
            if self.only_missing_artwork:
                raise SkipArtwork(f"Official {request.art_style.name} artwork available on Steam")
            return artwork
        return None


STEAMGRIDDB_BASE_URL = "https://www.steamgriddb.com/api/v2"
STEAMGRIDDB_ENDPOINTS = {BANNER: "grids", COVER: "grids", HERO: "heroes", LOGO: "logos"}


def pick_best_image(images: List[dict]) -> Optional[dict]:
    """Pick the best image based on score, upvotes and id."""
    candidates = [g for g in images if (g.get("url") or "").strip()]
    if not candidates:
        return None
    candidates.sort(key=lambda x: (x.get("score", 0) or 0, x.get("upvotes", 0) or 0, x.get("id", 0) or 0), reverse=True)
    return candidates[0]


class SteamGridDBProvider(ArtworkProvider):
    name = "steamgriddb"
    log_tag = "SGDB"
    provenance = Provenance.STEAMGRIDDB

    def __init__(self, client: GridHttpClient, api_key: str, base_url: str = STEAMGRIDDB_BASE_URL,
                 styles: Sequence[str] = ("alternate",), types: Sequence[str] = ("static",), callbacks=None):
        super().__init__(client, callbacks)
        self.api_key = api_key
        self.base_url = base_url
        self.styles = list(styles)
        self.types = list(types)

    def _get(self, path: str, params: Optional[dict] = None) -> Optional[dict]:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        r = self.client.get(url, headers=headers, params=params)
        if r.status_code == 401:
            raise AuthInvalid("SteamGridDB")
        if r.status_code == 404:
            # Could not find game with that id
            return None
        if r.status_code >= 400:
            raise HardError(f"SteamGridDB request {path} failed: HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise HardError(f"SteamGridDB returned invalid JSON for {path}: {e}") from e

    def _params(self, dimensions: Optional[str]) -> dict:
        params = {}
        if self.styles:
            params["styles"] = ",".join(self.styles)
        if self.types:
            params["types"] = ",".join(self.types)
        if dimensions:
            params["dimensions"] = dimensions
        return params

    def search_game_id(self, game_name: str) -> Optional[int]:
        data = self._get(f"search/autocomplete/{quote(game_name, safe='')}") or {}
        results = (data.get("data") or []) if data.get("success") else []
        if not results:
            return None
        names = [str(x.get("name") or "") for x in results]
        matches = fuzzy_match_title(game_name, names, threshold=0.5)
        if matches:
            best_name = matches[0][0]
            for result in results:
                if str(result.get("name") or "") == best_name:
                    self._log(f"'{game_name}' matched '{best_name}' (id {result.get('id')})")
                    return result.get("id")
        # SteamGridDB's own ranking
        return results[0].get("id")

    def try_fetch(self, request: ArtworkRequest) -> Optional[RawArtwork]:
        style = request.art_style
        endpoint = STEAMGRIDDB_ENDPOINTS[style.name]
        # Logos have no fixed dimensions. Both dimensions could be requested in
        # one go, but the results wouldn't say which one is which size.
        dimension_filters = [None] if style.name == LOGO else style.dimension_filters()

        steam_id_known = not request.is_custom_game
        searched = False
        sgdb_game_id = None

        for dimensions in dimension_filters:
            params = self._params(dimensions)
            data = None
            if steam_id_known:
                data = self._get(f"{endpoint}/steam/{request.game_id}", params)
                if data is None:
                    steam_id_known = False
            if not steam_id_known:
                if not searched:
                    searched = True
                    if request.game_name:
                        self._log(f"Searching for '{request.game_name}'")
                        sgdb_game_id = self.search_game_id(request.game_name)
                if sgdb_game_id is None:
                    return None
                data = self._get(f"{endpoint}/game/{sgdb_game_id}", params)

            if data and data.get("success"):
                best = pick_best_image(data.get("data") or [])
                if best:
                    artwork = download_artwork(self.client, best["url"].strip(), self.provenance)
                    if artwork is not None:
                        return artwork
        return None


IGDB_BASE_URL = "https://api.igdb.com/v4"
IGDB_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
# Sizes: cover_small (90x128), cover_big (264x374), 720p (1280x720), 1080p (1920x1080)
IGDB_IMAGE_URL = "https://images.igdb.com/igdb/image/upload/t_{size}/{image_id}.jpg"


class IGDBProvider(ArtworkProvider):
    """IGDB mostly has cover art, so it only answers for covers."""
    name = "igdb"
    log_tag = "IGDB"
    provenance = Provenance.IGDB

    def __init__(self, client: GridHttpClient, client_id: str, client_secret: str,
                 base_url: str = IGDB_BASE_URL, token_url: str = IGDB_TOKEN_URL,
                 image_size: str = "720p", callbacks=None):
        super().__init__(client, callbacks)
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url
        self.token_url = token_url
        self.image_size = image_size
        self._token_lock = threading.Lock()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def supports(self, request: ArtworkRequest) -> bool:
        return request.art_style.name == COVER and bool(request.game_name)

    def access_token(self) -> str:
        """Twitch OAuth client-credentials token, cached until shortly before it expires."""
        with self._token_lock:
            if self._token and time.time() < self._token_expires_at:
                return self._token
            params = {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            }
            r = self.client.post(self.token_url, params=params)
            if r.status_code in (400, 401, 403):
                raise AuthInvalid("IGDB", "IGDB client id or secret is invalid")
            if r.status_code >= 400:
                raise HardError(f"IGDB token request failed: HTTP {r.status_code}")
            try:
                data = r.json()
            except ValueError as e:
                raise HardError(f"IGDB token response is not JSON: {e}") from e
            token = data.get("access_token")
            if not token:
                raise AuthInvalid("IGDB", "IGDB did not return an access token")
            expires_in = int(data.get("expires_in", 3600))
            # 5 minute buffer
            self._token = token
            self._token_expires_at = time.time() + expires_in - 300
            return token

    def try_fetch(self, request: ArtworkRequest) -> Optional[RawArtwork]:
        token = self.access_token()
        headers = {
            "Client-ID": self.client_id,
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        search_title = normalize_for_search(request.game_name).replace('"', '\\"')
        query = f'search "{search_title}"; fields name,cover.image_id; limit 5;'
        r = self.client.post(f"{self.base_url.rstrip('/')}/games", data=query, headers=headers)
        if r.status_code in (401, 403):
            raise AuthInvalid("IGDB")
        if r.status_code >= 400:
            raise HardError(f"IGDB search failed: HTTP {r.status_code}")
        try:
            games = r.json()
        except ValueError:
            return None
        if not isinstance(games, list):
            return None

        for game in games:
            cover = game.get("cover") or {}
            image_id = cover.get("image_id") if isinstance(cover, dict) else None
            if image_id:
                self._log(f"Best match for '{request.game_name}': '{game.get('name')}'")
                url = IGDB_IMAGE_URL.format(size=self.image_size, image_id=image_id)
                return download_artwork(self.client, url, self.provenance)
        return None


# When all else fails, search for it. Uses the regular web interface with an
# exact-size filter; the image search APIs are deprecated or heavily rate-limited.
IMAGE_SEARCH_URL_FORMAT = (
    "https://www.google.com.br/search?tbs=isz%3Aex%2Ciszw%3A{width}%2Ciszh%3A{height}"
    "&tbm=isch&num=5&q={query}"
)
# Possible result page formats
IMAGE_SEARCH_RESULT_PATTERNS = [
    re.compile(r'imgurl=(.+?\.(jpeg|jpg|png))&amp;imgrefurl='),
    re.compile(r'"ou":"(.+?)","'),
]


class ImageSearchProvider(ArtworkProvider):
    """Scrapes an image search results page. Only used for banners; covers give bad results."""
    name = "search"
    log_tag = "SEARCH"
    provenance = Provenance.SEARCH

    def supports(self, request: ArtworkRequest) -> bool:
        return request.art_style.name == BANNER and bool(request.game_name)

    def find_image_url(self, request: ArtworkRequest) -> Optional[str]:
        style = request.art_style
        url = IMAGE_SEARCH_URL_FORMAT.format(
            width=style.lq_width, height=style.lq_height, query=quote_plus(request.game_name)
        )
        r = self.client.get(url, headers={"User-Agent": BROWSER_USER_AGENT})
        if r.status_code != 200:
            self._log(f"Search page answered HTTP {r.status_code} for '{request.game_name}'")
            return None
        page = r.text
        for pattern in IMAGE_SEARCH_RESULT_PATTERNS:
            m = pattern.search(page)
            if m:
                return html.unescape(m.group(1))
        return None

    def try_fetch(self, request: ArtworkRequest) -> Optional[RawArtwork]:
        image_url = self.find_image_url(request)
        if not image_url:
            return None
        return download_artwork(self.client, image_url, self.provenance)


# ==========================
# Resolver
# ==========================
class SourceResolver:
    def __init__(self, providers: Sequence[ArtworkProvider],
                 breaker: Optional[ProviderCircuitBreaker] = None, callbacks=None):
        self.providers = list(providers)
        self.breaker = breaker or ProviderCircuitBreaker()
        self.callbacks = callbacks

    def resolve(self, request: ArtworkRequest) -> Optional[RawArtwork]:
        """
        Try each provider in order and return the first valid image.

        Returns None when every provider misses. Raises HardError for failures
        that should abort this game/art style, and SkipArtwork when official
        artwork exists in only-missing mode. A provider rejecting our
        credentials is disabled for the run and the chain moves on.
        """
        style = request.art_style
        for provider in self.providers:
            if not provider.supports(request) or self.breaker.is_open(provider.name):
                continue
            try:
                artwork = provider.try_fetch(request)
            except AuthInvalid as e:
                if self.breaker.trip(provider.name, str(e)):
                    emit_log(self.callbacks, f"[AUTH] {e}. Disabling {provider.name} for the rest of the run.")
                continue
            if artwork is None:
                continue

            width, height = image_size(artwork.data)
            if not passes_aspect_guard(style.name, width, height):
                emit_log(self.callbacks, f"[{provider.log_tag}] {request.display_name}: rejected {width}x{height} image for {style.name}")
                continue
            return artwork
        return None


# Get game name from SteamDB as last resort.
STEAMDB_URL_FORMAT = "https://steamdb.info/app/{game_id}"
STEAMDB_NAME_PATTERN = re.compile(r'<td>Name</td>\s*<td itemprop="name">(.*?)</td>')


def lookup_game_name(client: GridHttpClient, game_id: str) -> str:
    """Best effort; an empty string when the page can't be fetched or parsed."""
    try:
        r = client.try_download(STEAMDB_URL_FORMAT.format(game_id=game_id))
    except HardError:
        return ""
    if r is None:
        return ""
    m = STEAMDB_NAME_PATTERN.search(r.text or "")
    return html.unescape(m.group(1)).strip() if m else ""
