from __future__ import annotations

import json
from io import BytesIO
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest
from PIL import Image

from sources import GridHttpClient


# ==========================
# Image builders
# ==========================
def make_image_bytes(size: Tuple[int, int], color=(200, 40, 40, 255), fmt: str = "JPEG") -> bytes:
    img = Image.new("RGBA", size, color)
    if fmt == "JPEG":
        img = img.convert("RGB")
    buf = BytesIO()
    img.save(buf, fmt)
    return buf.getvalue()


def make_animation_bytes(fmt: str, size: Tuple[int, int], colors: Sequence[Tuple[int, int, int, int]],
                         durations: Sequence[int], loop: int = 0) -> bytes:
    """Animated PNG ("PNG") or WEBP ("WEBP"). Frames must differ or encoders merge them."""
    frames = [Image.new("RGBA", size, c) for c in colors]
    buf = BytesIO()
    kwargs = {"lossless": True} if fmt == "WEBP" else {}
    frames[0].save(buf, fmt, save_all=True, append_images=frames[1:], duration=list(durations), loop=loop, **kwargs)
    return buf.getvalue()


def make_overlay(size: Tuple[int, int], color=(0, 0, 255, 255), box: Optional[Tuple[int, int, int, int]] = None) -> Image.Image:
    """Transparent RGBA image, painted with color inside box (the whole image when box is None)."""
    overlay = Image.new("RGBA", size, (0, 0, 0, 0))
    region = box or (0, 0, size[0], size[1])
    overlay.paste(Image.new("RGBA", (region[2] - region[0], region[3] - region[1]), color), region[:2])
    return overlay


def read_frames(data: bytes) -> List[Tuple[Tuple[int, int], int]]:
    """[(size, duration)] for every frame of an image."""
    out = []
    with Image.open(BytesIO(data)) as img:
        for i in range(getattr(img, "n_frames", 1)):
            img.seek(i)
            img.load()
            out.append((img.size, int(round(img.info.get("duration", 0) or 0))))
    return out


# ==========================
# Fake HTTP
# ==========================
class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", headers: Optional[dict] = None,
                 json_data=None, text: Optional[str] = None, url: str = ""):
        self.status_code = status_code
        self.headers = headers or {}
        self.url = url
        self._json = json_data
        if json_data is not None and not content:
            content = json.dumps(json_data).encode("utf-8")
        self.content = content
        self._text = text

    @property
    def text(self) -> str:
        if self._text is not None:
            return self._text
        return self.content.decode("utf-8", "replace")

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


Route = Union[FakeResponse, Callable[..., FakeResponse]]


class FakeSession:
    """
    Stands in for requests.Session. Routes map a URL (without query string) to
    a FakeResponse, or to a callable(method, url, params, data, headers). Unknown
    URLs answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, Route]] = None):
        self.routes: Dict[str, Route] = routes if routes is not None else {}
        self.headers: dict = {}
        self.calls: List[Tuple[str, str, Optional[dict]]] = []
        self.request_headers: List[Optional[dict]] = []

    def _route(self, method: str, url: str, params=None, data=None, headers=None) -> FakeResponse:
        self.calls.append((method, url, params))
        self.request_headers.append(headers)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, url=url)
        if callable(route):
            return route(method, url, params, data, headers)
        return route

    def get(self, url, headers=None, params=None, timeout=None, **kwargs):
        return self._route("GET", url, params=params, headers=headers)

    def post(self, url, data=None, headers=None, params=None, timeout=None, **kwargs):
        return self._route("POST", url, params=params, data=data, headers=headers)

    def urls(self, method: Optional[str] = None) -> List[str]:
        return [u for m, u, _ in self.calls if method is None or m == method]


def image_response(data: bytes, content_type: str = "image/jpeg") -> FakeResponse:
    return FakeResponse(200, content=data, headers={"Content-Type": content_type})


@pytest.fixture
def routes() -> Dict[str, Route]:
    return {}


@pytest.fixture
def fake_session(routes) -> FakeSession:
    return FakeSession(routes)


@pytest.fixture
def http_client(fake_session) -> GridHttpClient:
    return GridHttpClient(timeout_s=5, session_factory=lambda: fake_session)


@pytest.fixture
def log_lines() -> List[str]:
    return []


@pytest.fixture
def callbacks(log_lines):
    return {"log": log_lines.append}


@pytest.fixture
def grid_dir(tmp_path):
    d = tmp_path / "grid"
    d.mkdir()
    return d
