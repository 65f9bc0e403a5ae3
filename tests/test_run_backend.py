import pytest

from art_styles import ART_STYLES, BANNER, COVER
from backup import BACKUP_DIR_NAME, BackupManager, ImageState
from conftest import FakeResponse, image_response, make_image_bytes, make_overlay
from grid_models import ArtworkRequest, Provenance
from grid_utils import sha256_bytes
from overlays import FIRST_TAG_ON_TOP, LAST_TAG_ON_TOP
from run_backend import (
    CancelToken,
    GridConfig,
    big_picture_id,
    build_requests,
    build_resolver,
    config_from_dict,
    load_config,
    run_job,
)
from sources import AKAMAI_URL_FORMAT, STEAMDB_URL_FORMAT, STEAMGRIDDB_BASE_URL, GridHttpClient


WIDE_JPEG = make_image_bytes((46, 21), (200, 40, 40, 255))
WIDE_PNG = make_image_bytes((46, 21), (40, 200, 40, 255), "PNG")
TALL_JPEG = make_image_bytes((30, 45), (40, 40, 200, 255))


def steam_url(game_id, style_name=BANNER):
    return AKAMAI_URL_FORMAT.format(game_id=game_id, segment=ART_STYLES[style_name].steam_path_segment)


def make_config(tmp_path, **overrides):
    values = dict(
        art_styles=(ART_STYLES[BANNER],),
        overlays_dir=tmp_path / "overlays",
        overrides_dir=tmp_path / "games",
        sgdb_enabled=False,
        igdb_enabled=False,
        search_enabled=False,
        write_big_picture_copy=False,
        lookup_missing_names=False,
        workers=2,
    )
    values.update(overrides)
    return GridConfig(**values)


@pytest.fixture
def run(fake_session, grid_dir, callbacks):
    def _run(config, games, cancel=None):
        return run_job(config, games, grid_dir, cancel=cancel, callbacks=callbacks,
                       session_factory=lambda: fake_session)
    return _run


def backup_names(grid_dir):
    folder = grid_dir / BACKUP_DIR_NAME
    return sorted(p.name for p in folder.iterdir()) if folder.is_dir() else []


# ----- config -----
def test_config_defaults(tmp_path, monkeypatch):
    for var in ("SGDB_API_KEY", "IGDB_CLIENT_ID", "IGDB_CLIENT_SECRET"):
        monkeypatch.delenv(var, raising=False)
    config = config_from_dict({}, tmp_path)
    assert [s.name for s in config.art_styles] == ["Banner", "Cover", "Hero", "Logo"]
    assert config.overlays_dir == tmp_path / "overlays by category"
    assert config.overrides_dir == tmp_path / "games"
    assert config.request_timeout_s == 10
    assert config.overlay_precedence == LAST_TAG_ON_TOP
    assert config.sgdb_api_key == ""
    assert config.workers == 4


def test_config_credentials_prefer_environment(tmp_path, monkeypatch):
    cfg = {"steamgriddb": {"api_key_env": "MY_SGDB_KEY", "api_key": "from-file"}}
    monkeypatch.setenv("MY_SGDB_KEY", "from-env")
    assert config_from_dict(cfg, tmp_path).sgdb_api_key == "from-env"
    monkeypatch.delenv("MY_SGDB_KEY")
    assert config_from_dict(cfg, tmp_path).sgdb_api_key == "from-file"


def test_config_art_styles_and_precedence(tmp_path, log_lines, callbacks):
    config = config_from_dict(
        {"art_styles": ["cover", "Poster"], "overlays": {"precedence": "First_Tag_On_Top"}},
        tmp_path,
        callbacks,
    )
    assert [s.name for s in config.art_styles] == [COVER]
    assert config.overlay_precedence == FIRST_TAG_ON_TOP
    assert any("Poster" in line for line in log_lines)

    with pytest.raises(ValueError):
        config_from_dict({"art_styles": ["Poster"]}, tmp_path)
    with pytest.raises(ValueError):
        config_from_dict({"overlays": {"precedence": "random"}}, tmp_path)


def test_load_config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "art_styles: [Banner]\n"
        "paths:\n"
        "  overlays_dir: ./my overlays\n"
        "network:\n"
        "  request_timeout_seconds: 3\n"
        "steamgriddb:\n"
        "  styles: alternate, blurred\n"
        "workers: 0\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.overlays_dir == tmp_path.resolve() / "my overlays"
    assert config.request_timeout_s == 3
    assert config.sgdb_styles == ("alternate", "blurred")
    assert config.workers == 1


def test_load_config_missing_file_uses_defaults(tmp_path, log_lines, callbacks):
    config = load_config(tmp_path / "missing.yaml", callbacks)
    assert len(config.art_styles) == 4
    assert any(line.startswith("[CONFIG]") and "not found" in line for line in log_lines)


def test_providers_without_credentials_are_disabled(tmp_path, http_client, log_lines, callbacks):
    config = make_config(tmp_path, sgdb_enabled=True, igdb_enabled=True, search_enabled=True)
    resolver = build_resolver(config, http_client, callbacks=callbacks)
    assert [p.name for p in resolver.providers] == ["steam", "search"]
    assert any("SteamGridDB disabled" in line for line in log_lines)
    assert any("IGDB disabled" in line for line in log_lines)


# ----- requests -----
def test_build_requests(http_client, routes):
    routes[STEAMDB_URL_FORMAT.format(game_id="570")] = FakeResponse(
        200, text='<td>Name</td><td itemprop="name">Dota 2</td>'
    )
    games = [
        {"id": 440, "name": "Team Fortress 2", "tags": ["Favorites"]},
        {"id": "", "name": "no id"},
        {"id": "570"},
        {"id": "3000000000", "custom": True},
    ]
    styles = [ART_STYLES[BANNER], ART_STYLES[COVER]]

    requests_ = build_requests(games, styles, http_client)

    assert len(requests_) == 6
    assert requests_[0] == ArtworkRequest("440", "Team Fortress 2", ART_STYLES[BANNER], ("Favorites",), False)
    assert requests_[2].game_name == "Dota 2"
    assert requests_[4].is_custom_game
    assert requests_[4].game_name == ""


def test_big_picture_id():
    assert big_picture_id("440") == str((440 << 32) | 0x02000000)
    assert big_picture_id("my-game") is None


# ----- pipeline -----
def test_scenario_a_writes_banner(tmp_path, run, routes, grid_dir):
    routes[steam_url("440")] = image_response(WIDE_JPEG)

    report = run(make_config(tmp_path), [{"id": "440", "name": "Team Fortress 2"}])

    assert (grid_dir / "440.jpg").read_bytes() == WIDE_JPEG
    assert report.found_count(Provenance.STEAM_SERVER) == 1
    assert report.downloaded == 1
    assert backup_names(grid_dir) == [f"440 {sha256_bytes(WIDE_JPEG)}.jpg"]


def test_second_run_changes_nothing(tmp_path, run, routes, fake_session, grid_dir):
    routes[steam_url("440")] = image_response(WIDE_JPEG)
    config = make_config(tmp_path)
    games = [{"id": "440", "name": "Team Fortress 2"}]

    run(config, games)
    backups_after_first = backup_names(grid_dir)
    second = run(config, games)

    assert backup_names(grid_dir) == backups_after_first
    assert second.downloaded == 0
    assert second.backups_written == 0
    assert second.found_count(Provenance.BACKUP) == 1
    assert fake_session.urls().count(steam_url("440")) == 1


def test_overlay_applied_once_across_runs(tmp_path, run, routes, grid_dir):
    overlays_dir = tmp_path / "overlays"
    overlays_dir.mkdir()
    make_overlay((46, 21), (255, 255, 255, 255), box=(0, 0, 10, 10)).save(overlays_dir / "Favorites.banner.png")
    routes[steam_url("440")] = image_response(WIDE_JPEG)
    config = make_config(tmp_path)
    games = [{"id": "440", "name": "Team Fortress 2", "tags": ["Favorites"]}]

    first = run(config, games)
    written = (grid_dir / "440.jpg").read_bytes()
    second = run(config, games)

    assert first.overlays_applied == 1
    assert written != WIDE_JPEG
    # the clean download is kept under the hash of the overlaid image
    assert (grid_dir / BACKUP_DIR_NAME / f"440 {sha256_bytes(written)}.jpg").read_bytes() == WIDE_JPEG
    assert second.backups_written == 0
    assert (grid_dir / "440.jpg").read_bytes() == written
    assert len(backup_names(grid_dir)) == 1


def test_scenario_d_manual_image_gets_backed_up(tmp_path, run, fake_session, grid_dir):
    (grid_dir / "440.png").write_bytes(WIDE_PNG)
    config = make_config(tmp_path)
    games = [{"id": "440", "name": "Team Fortress 2"}]

    first = run(config, games)

    assert first.found_count(Provenance.MANUAL) == 1
    assert first.backups_written == 1
    assert fake_session.calls == []
    existing = BackupManager(grid_dir).load_existing(ArtworkRequest("440", "Team Fortress 2", ART_STYLES[BANNER]))
    assert existing.state == ImageState.BACKUP

    second = run(config, games)
    assert second.found_count(Provenance.BACKUP) == 1
    assert second.found_count(Provenance.MANUAL) == 0


def test_format_change_removes_old_files(tmp_path, run, routes, grid_dir):
    routes[steam_url("440")] = image_response(WIDE_JPEG)
    config = make_config(tmp_path)
    (grid_dir / "440.png").write_bytes(WIDE_PNG)
    (grid_dir / "440 (original).jpg").write_bytes(WIDE_JPEG)

    run(config, [{"id": "440"}])

    # the legacy backup was used and migrated; the old png is gone
    assert sorted(p.name for p in grid_dir.iterdir() if p.is_file()) == ["440.jpg"]
    assert backup_names(grid_dir) == [f"440 {sha256_bytes(WIDE_JPEG)}.jpg"]


def test_not_found_writes_nothing(tmp_path, run, grid_dir):
    report = run(make_config(tmp_path), [{"id": "440", "name": "Team Fortress 2"}])
    assert [e.game_id for e in report.not_found] == ["440"]
    assert list(grid_dir.iterdir()) == []


def test_hard_error_does_not_stop_other_games(tmp_path, run, routes, grid_dir):
    routes[steam_url("440")] = FakeResponse(500)
    routes[steam_url("570")] = image_response(WIDE_JPEG)

    report = run(make_config(tmp_path), [{"id": "440"}, {"id": "570"}])

    assert [e.game_id for e in report.failed] == ["440"]
    assert [e.game_id for e in report.found_by[Provenance.STEAM_SERVER.value]] == ["570"]
    assert (grid_dir / "570.jpg").exists()
    assert not (grid_dir / "440.jpg").exists()


def test_auth_failure_is_reported(tmp_path, run, routes):
    routes[f"{STEAMGRIDDB_BASE_URL}/grids/steam/440"] = FakeResponse(401)
    config = make_config(tmp_path, steam_enabled=False, sgdb_enabled=True, sgdb_api_key="bad", workers=1)

    report = run(config, [{"id": "440", "name": "Team Fortress 2"}])

    assert report.auth_failures == ["steamgriddb"]
    assert [e.game_id for e in report.not_found] == ["440"]


def test_only_missing_artwork_skips(tmp_path, run, routes, grid_dir):
    routes[steam_url("440")] = image_response(WIDE_JPEG)
    report = run(make_config(tmp_path, only_missing_artwork=True), [{"id": "440"}])
    assert [e.game_id for e in report.skipped] == ["440"]
    assert not (grid_dir / "440.jpg").exists()


def test_write_failure_leaves_grid_untouched(tmp_path, run, routes, grid_dir):
    routes[steam_url("440")] = image_response(WIDE_JPEG)
    (grid_dir / BACKUP_DIR_NAME).write_bytes(b"")

    report = run(make_config(tmp_path), [{"id": "440"}])

    assert [e.game_id for e in report.write_failures] == ["440"]
    assert not (grid_dir / "440.jpg").exists()


def test_banner_big_picture_copy_and_cover(tmp_path, run, routes, grid_dir):
    routes[steam_url("440")] = image_response(WIDE_JPEG)
    routes[steam_url("440", COVER)] = image_response(TALL_JPEG)
    config = make_config(tmp_path, art_styles=(ART_STYLES[BANNER], ART_STYLES[COVER]), write_big_picture_copy=True)

    run(config, [{"id": "440"}])

    assert (grid_dir / f"{big_picture_id('440')}.jpg").read_bytes() == WIDE_JPEG
    assert (grid_dir / "440p.jpg").read_bytes() == TALL_JPEG
    assert not (grid_dir / f"{big_picture_id('440')}p.jpg").exists()


def test_override_folder_wins_over_download(tmp_path, run, routes, fake_session, grid_dir):
    overrides = tmp_path / "games"
    overrides.mkdir()
    (overrides / "team fortress 2.banner.png").write_bytes(WIDE_PNG)
    routes[steam_url("440")] = image_response(WIDE_JPEG)

    report = run(make_config(tmp_path), [{"id": "440", "name": "Team Fortress 2"}])

    assert (grid_dir / "440.png").read_bytes() == WIDE_PNG
    assert report.found_count(Provenance.MANUAL) == 1
    assert fake_session.calls == []


def test_progress_and_cancel(tmp_path, fake_session, routes, grid_dir):
    routes[steam_url("440")] = image_response(WIDE_JPEG)
    routes[steam_url("570")] = image_response(WIDE_JPEG)
    progress = []
    callbacks = {"log": lambda msg: None, "progress": lambda done, total: progress.append((done, total))}
    config = make_config(tmp_path)

    run_job(config, [{"id": "440"}, {"id": "570"}], grid_dir, callbacks=callbacks,
            session_factory=lambda: fake_session)
    assert progress[-1] == (2, 2)
    assert len(progress) == 2

    cancelled_dir = tmp_path / "cancelled"
    token = CancelToken()
    token.cancel()
    report = run_job(config, [{"id": "440"}, {"id": "570"}], cancelled_dir, cancel=token,
                     session_factory=lambda: fake_session)
    assert report.found_by == {}
    assert list(cancelled_dir.iterdir()) == []


def test_http_client_sets_user_agent_on_sessions(fake_session):
    client = GridHttpClient(session_factory=lambda: fake_session, user_agent="test-agent")
    assert client.session() is fake_session
    assert fake_session.headers["User-Agent"] == "test-agent"


def test_gif_download_is_stored_as_png_and_found_again(tmp_path, run, routes, fake_session, grid_dir):
    gif = make_image_bytes((46, 21), fmt="GIF")
    routes[steam_url("440")] = image_response(gif, "image/gif")
    config = make_config(tmp_path)
    games = [{"id": "440", "name": "Team Fortress 2"}]

    first = run(config, games)
    second = run(config, games)

    assert sorted(p.name for p in grid_dir.iterdir() if p.is_file()) == ["440.png"]
    assert first.downloaded == 1
    assert second.downloaded == 0
    assert second.backups_written == 0
    assert second.found_count(Provenance.BACKUP) == 1
    assert fake_session.urls().count(steam_url("440")) == 1


def test_cancelled_units_are_not_counted_as_errors(tmp_path, fake_session, routes, grid_dir):
    token = CancelToken()
    lines = []

    def cancel_while_downloading(method, url, params, data, headers):
        token.cancel()
        return image_response(WIDE_JPEG)

    routes[steam_url("440")] = cancel_while_downloading
    routes[steam_url("570")] = image_response(WIDE_JPEG)
    config = make_config(tmp_path, workers=1)

    run_job(config, [{"id": "440"}, {"id": "570"}], grid_dir, cancel=token,
            callbacks={"log": lines.append}, session_factory=lambda: fake_session)

    stop = [line for line in lines if line.startswith("[STOP] Cancelled.")]
    assert len(stop) == 1
    assert "errors=0" in stop[0]
    assert steam_url("570") not in fake_session.urls()
