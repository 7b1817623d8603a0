from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path


STATIC_DIR = Path(__file__).parent / "static"
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


@dataclass(frozen=True)
class StaticAssets:
    """Sub-resources served at content-derived paths, so they never need invalidating."""

    tokens_css: str
    app_css: str
    js: bytes
    favicon_svg: bytes
    manifest: bytes

    @property
    def css(self) -> bytes:
        return f"{self.tokens_css}\n{self.app_css}".encode("utf-8")

    @property
    def css_hash(self) -> str:
        return content_hash(self.css)

    @property
    def js_hash(self) -> str:
        return content_hash(self.js)

    @property
    def css_path(self) -> str:
        return f"/static/{self.css_hash}.css"

    @property
    def js_path(self) -> str:
        return f"/static/{self.js_hash}.js"


def load_assets(static_dir: Path = STATIC_DIR) -> StaticAssets:
    return StaticAssets(
        tokens_css=(static_dir / "tokens.css").read_text(encoding="utf-8"),
        app_css=(static_dir / "app.css").read_text(encoding="utf-8"),
        js=(static_dir / "app.js").read_bytes(),
        favicon_svg=(static_dir / "favicon.svg").read_bytes(),
        manifest=(static_dir / "site.webmanifest").read_bytes(),
    )


def load_icons(static_dir: Path = STATIC_DIR) -> dict[str, str]:
    icons: dict[str, str] = {}
    for path in sorted((static_dir / "icons").glob("*.svg")):
        icons[path.stem] = path.read_text(encoding="utf-8").strip()
    return icons
