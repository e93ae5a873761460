"""Minimal static file server for prebuilt frontends.

Run as its own process so the bootstrapper can kill it like any dev server:

    python -m apex.probe.static_server --root /workspace/site --port 3900

Requests that resolve outside --root get 403; directories serve their
index.html.
"""

from __future__ import annotations

import argparse
import logging
import mimetypes
import posixpath
from functools import partial
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import unquote, urlsplit

logger = logging.getLogger(__name__)

mimetypes.add_type("application/javascript", ".mjs")
mimetypes.add_type("font/woff2", ".woff2")
mimetypes.add_type("image/webp", ".webp")


def resolve_request_path(root: Path, raw_path: str) -> Path | None:
    """Map a request path to a file under root; None if it escapes root."""
    path = unquote(urlsplit(raw_path).path or "/")
    rel = posixpath.normpath(path.lstrip("/")) if path.strip("/") else "index.html"
    if rel in (".", ""):
        rel = "index.html"
    root = root.resolve()
    target = (root / rel).resolve()
    if target != root and root not in target.parents:
        return None
    if target.is_dir():
        target = target / "index.html"
    return target


class GuardedStaticHandler(SimpleHTTPRequestHandler):
    """SimpleHTTPRequestHandler with an explicit traversal guard and quiet logging."""

    def __init__(self, *args, root: Path, **kwargs) -> None:
        self._root = root
        super().__init__(*args, directory=str(root), **kwargs)

    def send_head(self):
        target = resolve_request_path(self._root, self.path)
        if target is None:
            self.send_error(HTTPStatus.FORBIDDEN, "forbidden")
            return None
        if not target.is_file():
            self.send_error(HTTPStatus.NOT_FOUND, "not found")
            return None
        try:
            f = open(target, "rb")
        except OSError:
            self.send_error(HTTPStatus.NOT_FOUND, "not found")
            return None
        ctype = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        if ctype.startswith("text/") or ctype in ("application/javascript", "application/json"):
            ctype += "; charset=utf-8"
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", ctype)
        self.send_header("Content-Length", str(target.stat().st_size))
        self.end_headers()
        return f

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


def serve(root: str, port: int, host: str = "0.0.0.0") -> None:
    handler = partial(GuardedStaticHandler, root=Path(root).resolve())
    with ThreadingHTTPServer((host, port), handler) as httpd:
        logger.info("Serving %s on %s:%d", root, host, port)
        httpd.serve_forever()


def main() -> None:
    parser = argparse.ArgumentParser(description="Apex static file server")
    parser.add_argument("--root", required=True, help="Directory to serve")
    parser.add_argument("--port", type=int, default=3900, help="Port to listen on")
    parser.add_argument("--host", default="0.0.0.0")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    serve(args.root, args.port, args.host)


if __name__ == "__main__":
    main()
