"""App Bootstrapper — find and boot a web frontend in an unknown repository.

Strategies, in order:
  1. dev server: for each candidate dir with a dev/start/serve script,
     install dependencies if needed, `npm run <script>`, poll well-known
     ports until one answers and the browser can load it
  2. existing port: probe the well-known ports once directly
  3. static: serve each discovered index.html on a fallback port and
     reject blank renders

Every attempt runs in its own AsyncExitStack. A losing attempt's processes
and pages are torn down when its stack exits; the winning attempt's stack is
transferred to the caller's stack so the server lives until the scan is done.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path

import httpx
from playwright.async_api import BrowserContext, Page
from playwright.async_api import Error as PlaywrightError

from apex.config import settings
from apex.errors import NoRunnableAppError
from apex.probe.discovery import (
    StaticEntry,
    collect_candidate_dirs,
    has_installed_dependencies,
    read_start_script,
    static_entry_candidates,
)
from apex.probe.process import ManagedProcess

logger = logging.getLogger(__name__)

DEV_SERVER_PORTS = (3000, 5173, 4173, 8080, 8000, 4200)
STATIC_SERVER_PORTS = (3900, 3901, 3902, 3903, 3904)
NPM_INSTALL_ARGS = ["npm", "install", "--legacy-peer-deps", "--prefer-offline", "--no-audit", "--no-fund"]

STATIC_BOOT_SECONDS = 0.9
RENDER_SETTLE_SECONDS = 1.2
HTTP_PROBE_TIMEOUT_SECONDS = 2.0

_DOM_PROBE_JS = """
() => {
  const body = document.body;
  if (!body) return { textLength: 0, elementCount: 0 };
  return {
    textLength: (body.innerText || "").trim().length,
    elementCount: body.querySelectorAll("*").length,
  };
}
"""

HttpProbe = Callable[[str], Awaitable[bool]]
ProcessFactory = Callable[..., ManagedProcess]


@dataclass
class ResolvedApp:
    """A reachable app URL and the page already loaded on it."""

    url: str
    page: Page
    strategy: str
    directory: str


async def http_answers(url: str) -> bool:
    """True if anything answers HTTP at url (any status code)."""
    try:
        async with httpx.AsyncClient(timeout=HTTP_PROBE_TIMEOUT_SECONDS) as client:
            await client.get(url)
        return True
    except httpx.HTTPError:
        return False


def is_blank_render(probe: dict) -> bool:
    """No visible text and almost no elements: the page rendered nothing."""
    text_length = int(probe.get("textLength") or 0)
    element_count = int(probe.get("elementCount") or 0)
    return text_length == 0 and element_count < 3


class AppBootstrapper:
    """Resolve a URL serving the repository's frontend inside the sandbox."""

    def __init__(
        self,
        context: BrowserContext,
        workspace: str = "/workspace",
        *,
        ports: Sequence[int] = DEV_SERVER_PORTS,
        static_ports: Sequence[int] = STATIC_SERVER_PORTS,
        server_wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        npm_install_timeout_seconds: float | None = None,
        navigation_timeout_ms: int | None = None,
        http_probe: HttpProbe = http_answers,
        process_factory: ProcessFactory = ManagedProcess,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._context = context
        self._workspace = workspace
        self._ports = tuple(ports)
        self._static_ports = tuple(static_ports)
        self._server_wait = server_wait_seconds or settings.probe_server_wait_seconds
        self._poll_interval = poll_interval_seconds or settings.probe_poll_interval_seconds
        self._install_timeout = npm_install_timeout_seconds or settings.probe_npm_install_timeout_seconds
        self._nav_timeout_ms = navigation_timeout_ms or settings.probe_navigation_timeout_ms
        self._http_probe = http_probe
        self._process_factory = process_factory
        self._sleep = sleep
        self._clock = clock

    async def resolve(self, stack: AsyncExitStack) -> ResolvedApp:
        """Boot the app; resources of the winning strategy are pushed onto stack.

        Raises:
            NoRunnableAppError: every strategy failed.
        """
        candidates = collect_candidate_dirs(self._workspace)
        logger.info("Candidate app directories: %s", [str(c) for c in candidates])

        for directory in candidates:
            script = read_start_script(directory)
            if script is None:
                continue
            app = await self._try_dev_server(directory, script, stack)
            if app is not None:
                return app

        app = await self._try_existing_ports(stack)
        if app is not None:
            return app

        for entry in static_entry_candidates(candidates):
            app = await self._try_static(entry, stack)
            if app is not None:
                return app

        raise NoRunnableAppError()

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _try_dev_server(self, directory: Path, script: str, stack: AsyncExitStack) -> ResolvedApp | None:
        await self._install_dependencies(directory)
        async with AsyncExitStack() as attempt:
            proc = await attempt.enter_async_context(
                self._process_factory(["npm", "run", script], cwd=str(directory), env=self._server_env())
            )
            page = await self._new_page(attempt)
            deadline = self._clock() + self._server_wait
            while self._clock() < deadline:
                await self._sleep(self._poll_interval)
                url = await self._first_live_port(page)
                if url is not None:
                    logger.info("Dev server `npm run %s` in %s answered at %s", script, directory, url)
                    stack.push_async_exit(attempt.pop_all())
                    return ResolvedApp(url=url, page=page, strategy="dev_server", directory=str(directory))
                if proc.returncode is not None:
                    logger.info("`npm run %s` in %s exited with %s", script, directory, proc.returncode)
                    break
            else:
                logger.info("`npm run %s` in %s did not answer within %.0fs", script, directory, self._server_wait)
        return None

    async def _try_existing_ports(self, stack: AsyncExitStack) -> ResolvedApp | None:
        async with AsyncExitStack() as attempt:
            page = await self._new_page(attempt)
            url = await self._first_live_port(page)
            if url is not None:
                logger.info("Found an app already listening at %s", url)
                stack.push_async_exit(attempt.pop_all())
                return ResolvedApp(url=url, page=page, strategy="existing_port", directory=self._workspace)
        return None

    async def _try_static(self, entry: StaticEntry, stack: AsyncExitStack) -> ResolvedApp | None:
        for port in self._static_ports:
            async with AsyncExitStack() as attempt:
                proc = await attempt.enter_async_context(
                    self._process_factory(
                        [sys.executable, "-m", "apex.probe.static_server", "--root", str(entry.root), "--port", str(port)],
                        cwd=str(entry.root),
                    )
                )
                await self._sleep(STATIC_BOOT_SECONDS)
                if proc.returncode is not None:
                    logger.info("Static server could not bind port %d", port)
                    continue
                url = f"http://localhost:{port}/"
                if not await self._http_probe(url):
                    continue

                page = await self._new_page(attempt)
                try:
                    await page.goto(url, wait_until="domcontentloaded", timeout=self._nav_timeout_ms)
                except PlaywrightError as e:
                    logger.info("Static entry %s failed to load: %s", entry.file, e)
                    return None
                await self._sleep(RENDER_SETTLE_SECONDS)

                if page.url.startswith("chrome-error://"):
                    logger.info("Static entry %s produced a browser error page", entry.file)
                    return None
                if is_blank_render(await page.evaluate(_DOM_PROBE_JS)):
                    logger.info("Static entry %s rendered blank, skipping", entry.file)
                    return None

                logger.info("Serving static entry %s at %s", entry.file, url)
                stack.push_async_exit(attempt.pop_all())
                return ResolvedApp(url=url, page=page, strategy="static", directory=str(entry.root))
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _install_dependencies(self, directory: Path) -> None:
        if has_installed_dependencies(directory):
            return
        logger.info("Installing dependencies in %s", directory)
        async with self._process_factory(NPM_INSTALL_ARGS, cwd=str(directory), env=self._server_env()) as proc:
            code = await proc.wait(self._install_timeout)
        if code is None:
            logger.warning("npm install in %s timed out after %.0fs", directory, self._install_timeout)
        elif code != 0:
            logger.warning("npm install in %s exited with %s", directory, code)

    async def _first_live_port(self, page: Page) -> str | None:
        for port in self._ports:
            url = f"http://localhost:{port}"
            if not await self._http_probe(url):
                continue
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=self._nav_timeout_ms)
            except PlaywrightError as e:
                logger.debug("Port %d answered HTTP but did not load: %s", port, e)
                continue
            return url
        return None

    async def _new_page(self, attempt: AsyncExitStack) -> Page:
        page = await self._context.new_page()
        attempt.push_async_callback(page.close)
        return page

    @staticmethod
    def _server_env() -> dict[str, str]:
        env = dict(os.environ)
        env.setdefault("PORT", "3000")
        env.setdefault("NODE_ENV", "development")
        env["BROWSER"] = "none"
        env["CI"] = "true"
        return env
