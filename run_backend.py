import os
import threading
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app_paths import OVERLAYS_DIR_NAME, OVERRIDES_DIR_NAME, get_app_dir, get_config_path
from art_styles import ART_STYLES, BANNER, ArtStyleSpec, select_art_styles
from backup import BackupManager
from grid_models import ArtworkRequest, HardError, RunReport, SkipArtwork, WriteFailure
from grid_utils import emit_log, emit_progress, ensure_dir, load_yaml, normalize_extension
from overlays import LAST_TAG_ON_TOP, PRECEDENCE_POLICIES, OverlayCompositor, load_overlays
from sources import (
    DEFAULT_TIMEOUT_S,
    DEFAULT_USER_AGENT,
    IGDB_BASE_URL,
    IGDB_TOKEN_URL,
    STEAMGRIDDB_BASE_URL,
    GridHttpClient,
    IGDBProvider,
    ImageSearchProvider,
    ProviderCircuitBreaker,
    SourceResolver,
    SteamCdnProvider,
    SteamGridDBProvider,
    lookup_game_name,
)


# ==========================
# Cancel Token
# ==========================
class CancelToken:
    def __init__(self):
        self._evt = threading.Event()

    def cancel(self):
        self._evt.set()

    @property
    def is_cancelled(self) -> bool:
        return self._evt.is_set()


# ==========================
# Config
# ==========================
@dataclass(frozen=True)
class GridConfig:
    art_styles: Tuple[ArtStyleSpec, ...]
    overlays_dir: Optional[Path] = None
    overrides_dir: Optional[Path] = None
    request_timeout_s: float = DEFAULT_TIMEOUT_S
    user_agent: str = DEFAULT_USER_AGENT
    # Steam CDN
    steam_enabled: bool = True
    only_missing_artwork: bool = False
    write_big_picture_copy: bool = True
    lookup_missing_names: bool = True
    # SteamGridDB
    sgdb_enabled: bool = True
    sgdb_api_key: str = ""
    sgdb_api_key_env: str = "SGDB_API_KEY"
    sgdb_base_url: str = STEAMGRIDDB_BASE_URL
    sgdb_styles: Tuple[str, ...] = ("alternate",)
    sgdb_types: Tuple[str, ...] = ("static",)
    # IGDB
    igdb_enabled: bool = True
    igdb_client_id: str = ""
    igdb_client_secret: str = ""
    igdb_client_id_env: str = "IGDB_CLIENT_ID"
    igdb_client_secret_env: str = "IGDB_CLIENT_SECRET"
    igdb_base_url: str = IGDB_BASE_URL
    igdb_token_url: str = IGDB_TOKEN_URL
    igdb_image_size: str = "720p"
    # Image search
    search_enabled: bool = True
    # Overlays
    overlay_precedence: str = LAST_TAG_ON_TOP
    convert_webp_to_apng: bool = False
    convert_webp_to_apng_covers_banners: bool = False
    max_animation_memory_mb: int = 0
    jpeg_quality: int = 95
    workers: int = 4


def _credential(section: dict, env_key: str, default_env: str, literal_key: str) -> Tuple[str, str]:
    """(value, env var name) - the environment wins over a key written in the config file."""
    env_name = section.get(env_key, default_env) or default_env
    value = os.environ.get(env_name, "").strip()
    if not value:
        value = str(section.get(literal_key) or "").strip()
    return value, env_name


def _as_tuple(value, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        value = [v.strip() for v in value.split(",")]
    return tuple(str(v) for v in value if str(v).strip())


def _resolve_dir(root: Path, value: Optional[str], default: str) -> Optional[Path]:
    p = Path(value if value else default)
    return p if p.is_absolute() else root / p


def config_from_dict(cfg: Dict[str, Any], root: Path, callbacks=None) -> GridConfig:
    """Build a GridConfig from parsed YAML. Relative paths resolve against root."""
    root = Path(root)

    style_names = cfg.get("art_styles") or list(ART_STYLES)
    art_styles, unknown = select_art_styles(style_names)
    for name in unknown:
        emit_log(callbacks, f"[CONFIG] Ignoring unknown art style '{name}'")
    if not art_styles:
        raise ValueError("No valid art styles enabled in config")

    paths = cfg.get("paths", {}) or {}
    network = cfg.get("network", {}) or {}
    steam = cfg.get("steam", {}) or {}
    sg = cfg.get("steamgriddb", {}) or {}
    igdb_cfg = cfg.get("igdb", {}) or {}
    search = cfg.get("search", {}) or {}
    ov = cfg.get("overlays", {}) or {}

    sgdb_key, sgdb_env = _credential(sg, "api_key_env", "SGDB_API_KEY", "api_key")
    igdb_id, igdb_id_env = _credential(igdb_cfg, "client_id_env", "IGDB_CLIENT_ID", "client_id")
    igdb_secret, igdb_secret_env = _credential(igdb_cfg, "client_secret_env", "IGDB_CLIENT_SECRET", "client_secret")

    precedence = str(ov.get("precedence", LAST_TAG_ON_TOP)).strip().lower()
    if precedence not in PRECEDENCE_POLICIES:
        raise ValueError(f"overlays.precedence must be one of {', '.join(PRECEDENCE_POLICIES)}, got '{precedence}'")

    return GridConfig(
        art_styles=tuple(art_styles),
        overlays_dir=_resolve_dir(root, paths.get("overlays_dir"), OVERLAYS_DIR_NAME),
        overrides_dir=_resolve_dir(root, paths.get("overrides_dir"), OVERRIDES_DIR_NAME),
        request_timeout_s=float(network.get("request_timeout_seconds", DEFAULT_TIMEOUT_S)),
        user_agent=str(network.get("user_agent") or DEFAULT_USER_AGENT),
        steam_enabled=bool(steam.get("enabled", True)),
        only_missing_artwork=bool(steam.get("only_missing_artwork", False)),
        write_big_picture_copy=bool(steam.get("write_big_picture_copy", True)),
        lookup_missing_names=bool(steam.get("lookup_missing_names", True)),
        sgdb_enabled=bool(sg.get("enabled", True)),
        sgdb_api_key=sgdb_key,
        sgdb_api_key_env=sgdb_env,
        sgdb_base_url=sg.get("base_url", STEAMGRIDDB_BASE_URL),
        sgdb_styles=_as_tuple(sg.get("styles"), ("alternate",)),
        sgdb_types=_as_tuple(sg.get("types"), ("static",)),
        igdb_enabled=bool(igdb_cfg.get("enabled", True)),
        igdb_client_id=igdb_id,
        igdb_client_secret=igdb_secret,
        igdb_client_id_env=igdb_id_env,
        igdb_client_secret_env=igdb_secret_env,
        igdb_base_url=igdb_cfg.get("base_url", IGDB_BASE_URL),
        igdb_token_url=igdb_cfg.get("token_url", IGDB_TOKEN_URL),
        igdb_image_size=str(igdb_cfg.get("image_size", "720p")),
        search_enabled=bool(search.get("enabled", True)),
        overlay_precedence=precedence,
        convert_webp_to_apng=bool(ov.get("convert_webp_to_apng", False)),
        convert_webp_to_apng_covers_banners=bool(ov.get("convert_webp_to_apng_covers_banners", False)),
        max_animation_memory_mb=int(ov.get("max_animation_memory_mb", 0) or 0),
        jpeg_quality=int(ov.get("jpeg_quality", 95)),
        workers=max(1, int(cfg.get("workers", 4))),
    )


def load_config(config_path: Optional[Path] = None, callbacks=None) -> GridConfig:
    """Read config.yaml (next to the application by default). A missing file means defaults."""
    config_path = Path(config_path) if config_path else get_config_path()
    if config_path.is_file():
        cfg = load_yaml(config_path)
        root = config_path.resolve().parent
    else:
        emit_log(callbacks, f"[CONFIG] {config_path} not found, using defaults")
        cfg = {}
        root = get_app_dir()
    return config_from_dict(cfg, root, callbacks)


# ==========================
# Wiring
# ==========================
def build_resolver(config: GridConfig, client: GridHttpClient,
                   breaker: Optional[ProviderCircuitBreaker] = None, callbacks=None) -> SourceResolver:
    """Provider chain in fallback order: Steam CDN, SteamGridDB, IGDB, image search."""
    providers = []
    if config.steam_enabled:
        providers.append(SteamCdnProvider(client, only_missing_artwork=config.only_missing_artwork, callbacks=callbacks))

    if config.sgdb_enabled:
        if config.sgdb_api_key:
            providers.append(SteamGridDBProvider(
                client,
                config.sgdb_api_key,
                base_url=config.sgdb_base_url,
                styles=config.sgdb_styles,
                types=config.sgdb_types,
                callbacks=callbacks,
            ))
        else:
            emit_log(callbacks, f"[CONFIG] SteamGridDB API key not set ({config.sgdb_api_key_env}). SteamGridDB disabled.")

    if config.igdb_enabled:
        if config.igdb_client_id and config.igdb_client_secret:
            providers.append(IGDBProvider(
                client,
                config.igdb_client_id,
                config.igdb_client_secret,
                base_url=config.igdb_base_url,
                token_url=config.igdb_token_url,
                image_size=config.igdb_image_size,
                callbacks=callbacks,
            ))
        else:
            emit_log(callbacks, f"[CONFIG] IGDB credentials not set ({config.igdb_client_id_env}, {config.igdb_client_secret_env}). IGDB disabled.")

    if config.search_enabled:
        providers.append(ImageSearchProvider(client, callbacks=callbacks))

    emit_log(callbacks, f"[CONFIG] Using providers: {', '.join(p.name for p in providers) or 'none'}")
    return SourceResolver(providers, breaker=breaker, callbacks=callbacks)


def build_compositor(config: GridConfig, callbacks=None) -> OverlayCompositor:
    overlays = load_overlays(config.overlays_dir, config.art_styles, callbacks)
    emit_log(callbacks, f"[CONFIG] Loaded {len(overlays)} overlay(s) from {config.overlays_dir}")
    return OverlayCompositor(
        overlays,
        precedence=config.overlay_precedence,
        convert_webp_to_apng=config.convert_webp_to_apng,
        convert_webp_to_apng_covers_banners=config.convert_webp_to_apng_covers_banners,
        max_animation_memory_bytes=config.max_animation_memory_mb * 1024 * 1024,
        jpeg_quality=config.jpeg_quality,
        callbacks=callbacks,
    )


def build_requests(games: Iterable[Dict[str, Any]], art_styles: Iterable[ArtStyleSpec],
                   client: Optional[GridHttpClient] = None, callbacks=None) -> List[ArtworkRequest]:
    """
    One request per game and art style.

    Games are dicts with "id", and optionally "name", "tags" and "custom".
    When a client is given, Steam games without a name get one from SteamDB.
    """
    styles = list(art_styles)
    requests_: List[ArtworkRequest] = []
    for game in games:
        game_id = str(game.get("id", "")).strip()
        if not game_id:
            continue
        name = str(game.get("name") or "").strip()
        is_custom = bool(game.get("custom", False))
        if not name and not is_custom and client is not None:
            name = lookup_game_name(client, game_id)
            if name:
                emit_log(callbacks, f"[STEAM] Found name '{name}' for {game_id}")
        tags = tuple(str(t) for t in (game.get("tags") or []))
        for style in styles:
            requests_.append(ArtworkRequest(game_id, name, style, tags, is_custom))
    return requests_


def big_picture_id(game_id: str) -> Optional[str]:
    """Big Picture mode looks up banners by a shifted id; only Steam (numeric) ids have one."""
    if not game_id.isdigit():
        return None
    return str((int(game_id) << 32) | 0x02000000)


# ==========================
# Pipeline
# ==========================
def process_artwork(
    request: ArtworkRequest,
    resolver: SourceResolver,
    backups: BackupManager,
    compositor: OverlayCompositor,
    report: RunReport,
    write_big_picture_copy: bool = True,
    callbacks=None,
) -> bool:
    """
    Process one game/art style: recover or download the clean image, back it
    up, apply overlays and write the result to the grid folder.

    Returns True when the unit ended without failure (including skips).
    Per-unit errors are recorded in the report, never raised.
    """
    style = request.art_style
    label = f"{request.display_name} ({style.name})"
    try:
        existing = backups.load_existing(request)
        if existing is not None:
            artwork = existing.to_artwork()
            emit_log(callbacks, f"[DEBUG] {label}: using {existing.state.value} {existing.path.name}")
        else:
            artwork = resolver.resolve(request)
            if artwork is None:
                emit_log(callbacks, f"[FAIL] {label}: no artwork found")
                report.record("not_found", request)
                return True
            report.bump("downloaded")

        clean_ext = normalize_extension(artwork.declared_format) or ".jpg"
        result = compositor.composite(artwork.data, clean_ext, request.tags, style)
        if result is None:
            final_bytes, final_ext, applied = artwork.data, clean_ext, 0
        else:
            final_bytes, final_ext, applied = result.data, result.extension, result.overlays_applied

        # The clean copy has to be recoverable before the grid image is replaced
        if backups.store(request.game_id, style, artwork.data, clean_ext, final_bytes):
            report.bump("backups_written")
        if existing is not None:
            backups.retire_legacy(existing)

        backups.purge_stale(request.game_id, style, final_ext, clean_ext)
        target = backups.canonical_path(request.game_id, style, final_ext)
        if backups.write_artwork(target, final_bytes):
            emit_log(callbacks, f"[WRITE] {target.name}")

        bp_id = big_picture_id(request.game_id) if write_big_picture_copy and style.name == BANNER else None
        if bp_id:
            backups.purge_stale(bp_id, style, final_ext, final_ext)
            bp_target = backups.canonical_path(bp_id, style, final_ext)
            if backups.write_artwork(bp_target, final_bytes):
                emit_log(callbacks, f"[WRITE] {bp_target.name}")

        if applied:
            report.bump("overlays_applied", applied)
        report.record_found(artwork.provenance, request)
        emit_log(callbacks, f"[OK] {label} ({artwork.source_label})")
        return True

    except SkipArtwork as e:
        emit_log(callbacks, f"[SKIP] {label}: {e}")
        report.record("skipped", request, str(e))
        return True
    except WriteFailure as e:
        emit_log(callbacks, f"[ERROR] {label}: {e}")
        report.record("write_failures", request, str(e))
        return False
    except HardError as e:
        emit_log(callbacks, f"[FAIL] {label}: {e}")
        report.record("failed", request, str(e))
        return False


def run_job(
    config: GridConfig,
    games: Iterable[Dict[str, Any]],
    grid_dir: Path,
    cancel: Optional[CancelToken] = None,
    callbacks=None,
    session_factory=None,
) -> RunReport:
    """Download, back up and overlay grid artwork for every game into grid_dir."""
    cancel = cancel or CancelToken()
    grid_dir = Path(grid_dir)
    ensure_dir(grid_dir)
    report = RunReport()

    client = GridHttpClient(config.request_timeout_s, config.user_agent, session_factory=session_factory)
    breaker = ProviderCircuitBreaker()
    resolver = build_resolver(config, client, breaker, callbacks)
    backups = BackupManager(grid_dir, config.overrides_dir, callbacks)
    compositor = build_compositor(config, callbacks)

    name_client = client if config.lookup_missing_names else None
    tasks = build_requests(games, config.art_styles, name_client, callbacks)
    total = len(tasks)
    if total == 0:
        emit_log(callbacks, "[PLAN] Nothing to do.")
        return report

    max_workers = max(1, min(config.workers, total))
    emit_log(callbacks, f"[PLAN] Queued {total} artwork(s). Workers={max_workers}")

    def work_item(request: ArtworkRequest) -> Optional[bool]:
        # None: never started because the job was cancelled
        if cancel.is_cancelled:
            return None
        try:
            return process_artwork(
                request, resolver, backups, compositor, report,
                write_big_picture_copy=config.write_big_picture_copy,
                callbacks=callbacks,
            )
        except Exception as e:
            emit_log(callbacks, f"[ERROR] {request.display_name} ({request.art_style.name}) - {type(e).__name__}: {e}")
            report.record("failed", request, f"{type(e).__name__}: {e}")
            return False

    done = 0
    errors = 0
    with ThreadPoolExecutor(max_workers=max_workers) as ex:
        futures = [ex.submit(work_item, r) for r in tasks]

        for fut in as_completed(futures):
            ok = fut.result()
            if ok is not None:
                if not ok:
                    errors += 1
                done += 1
                emit_progress(callbacks, done, total)

            if cancel.is_cancelled:
                emit_log(callbacks, "[STOP] Cancelled by user. Cancelling remaining tasks...")
                ex.shutdown(wait=False, cancel_futures=True)
                break

    report.auth_failures = sorted(breaker.tripped)
    if cancel.is_cancelled:
        emit_log(callbacks, f"[STOP] Cancelled. Completed {done}/{total} (errors={errors}).")
    else:
        emit_log(callbacks, f"[PLAN] Finished. Completed {done}/{total} (errors={errors}).")
    return report
