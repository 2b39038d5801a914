"""Browsing surface manager — one persistent Chromium context per session."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from playwright.async_api import async_playwright

from replyfleet.db.models import Fingerprint, Session
from replyfleet.utils.errors import SurfaceError
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.sessions.surface")

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
]

# Context launcher: (session, partition dir) -> BrowserContext
Launcher = Callable[[Session, Path], Awaitable[Any]]
LogSink = Callable[[str, str, str], None]


def fingerprint_script(fp: Fingerprint) -> str:
    """Init script that hides automation flags and applies the fingerprint.

    Playwright evaluates init scripts as source, so the body must run itself.
    """
    lang = fp.locale.split("-")[0]
    return f"""
(() => {{
  Object.defineProperty(navigator, 'webdriver', {{ get: () => undefined }});
  Object.defineProperty(navigator, 'platform', {{ get: () => {json.dumps(fp.platform)} }});
  Object.defineProperty(navigator, 'hardwareConcurrency', {{ get: () => {int(fp.hardware_concurrency)} }});
  Object.defineProperty(navigator, 'deviceMemory', {{ get: () => {int(fp.device_memory)} }});
  Object.defineProperty(navigator, 'languages', {{ get: () => {json.dumps([fp.locale, lang])} }});
  window.chrome = window.chrome || {{ runtime: {{}} }};
}})();
"""


@dataclass
class Surface:
    """A live browsing surface bound to one session."""

    session_id: str
    context: Any
    page: Any
    partition_dir: Path
    state: str = "loading"  # 'loading', 'ready', 'failed'
    last_error: str | None = None


class SurfaceManager:
    """Create, track and destroy browsing surfaces, keyed 1:1 by session id.

    The session id is reserved before the first await, so two concurrent
    attach calls for the same session cannot both create a surface.
    """

    def __init__(
        self,
        data_dir: Path | str,
        headless: bool = False,
        on_log: LogSink | None = None,
        launcher: Launcher | None = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.headless = headless
        self.on_log = on_log
        self._launcher = launcher or self._launch_chromium
        self._surfaces: dict[str, Surface] = {}
        self._pending: set[str] = set()
        self._playwright = None
        self._pw_lock = asyncio.Lock()

    def partition_dir(self, partition: str) -> Path:
        return self.data_dir / "partitions" / partition

    async def attach_surface(self, session: Session, entry_url: str) -> Surface:
        """Launch the session's surface and load its entry URL.

        Args:
            session: Session whose partition, fingerprint and proxy are used.
            entry_url: First page to load.

        Returns:
            The live Surface. A failed initial load is logged and the surface
            stays attached so it can be retried.

        Raises:
            SurfaceError: If a surface for the session exists or is being
                created, or if the browser context cannot be launched.
        """
        sid = session.id
        if sid in self._surfaces or sid in self._pending:
            raise SurfaceError(f"Surface already attached for session {sid}")
        self._pending.add(sid)

        pdir = self.partition_dir(session.partition)
        context = None
        try:
            pdir.mkdir(parents=True, exist_ok=True)
            context = await self._launcher(session, pdir)
            page = context.pages[0] if context.pages else await context.new_page()
            surface = Surface(session_id=sid, context=context, page=page, partition_dir=pdir)
            self._wire(surface)
            self._surfaces[sid] = surface
        except Exception as e:
            if context is not None:
                try:
                    await context.close()
                except Exception as close_err:
                    logger.warning(f"Failed to close half-created context: {close_err}")
            raise SurfaceError(f"Could not launch surface for '{session.name}': {e}") from e
        finally:
            self._pending.discard(sid)

        logger.info(f"Surface attached for session {sid[:8]} at {pdir}")
        try:
            await page.goto(entry_url, wait_until="domcontentloaded")
        except Exception as e:
            surface.state = "failed"
            surface.last_error = str(e)
            self._emit(sid, f"Load failed for {entry_url}: {e}", "error")
        return surface

    async def detach_surface(self, session_id: str) -> bool:
        """Close and forget a session's surface.

        Returns:
            True if a surface was closed, False if none was attached.
        """
        surface = self._surfaces.pop(session_id, None)
        if surface is None:
            return False
        try:
            await surface.context.close()
        except Exception as e:
            logger.warning(f"Error closing surface for {session_id[:8]}: {e}")
        logger.info(f"Surface detached for session {session_id[:8]}")
        return True

    def get(self, session_id: str) -> Surface | None:
        return self._surfaces.get(session_id)

    def live_ids(self) -> list[str]:
        return list(self._surfaces)

    def is_pending(self, session_id: str) -> bool:
        return session_id in self._pending

    async def close_all(self) -> None:
        for sid in list(self._surfaces):
            await self.detach_surface(sid)
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    # ── Internals ──

    def _wire(self, surface: Surface) -> None:
        page = surface.page
        sid = surface.session_id

        def on_ready(_page: Any) -> None:
            surface.state = "ready"
            surface.last_error = None
            self._emit(sid, f"Page ready: {page.url}", "info")

        def on_request_failed(request: Any) -> None:
            if request.is_navigation_request() and request.frame == page.main_frame:
                surface.state = "failed"
                surface.last_error = request.failure
                self._emit(sid, f"Load failed for {request.url}: {request.failure}", "error")

        def on_page_error(error: Any) -> None:
            logger.debug(f"[{sid[:8]}] page error: {error}")

        def on_console(msg: Any) -> None:
            if msg.type == "error":
                logger.debug(f"[{sid[:8]}] console: {msg.text}")

        page.on("domcontentloaded", on_ready)
        page.on("requestfailed", on_request_failed)
        page.on("pageerror", on_page_error)
        page.on("console", on_console)

    def _emit(self, session_id: str, message: str, severity: str) -> None:
        if self.on_log:
            self.on_log(session_id, message, severity)
        elif severity == "error":
            logger.error(f"[{session_id[:8]}] {message}")
        else:
            logger.info(f"[{session_id[:8]}] {message}")

    async def _launch_chromium(self, session: Session, pdir: Path) -> Any:
        async with self._pw_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
        fp = session.fingerprint
        proxy = None
        if session.proxy:
            proxy = {"server": session.proxy.server}
            if session.proxy.username:
                proxy["username"] = session.proxy.username
                proxy["password"] = session.proxy.password or ""
        context = await self._playwright.chromium.launch_persistent_context(
            str(pdir),
            headless=self.headless,
            user_agent=fp.user_agent,
            viewport={"width": fp.viewport[0], "height": fp.viewport[1]},
            locale=fp.locale,
            timezone_id=fp.timezone,
            proxy=proxy,
            args=LAUNCH_ARGS,
        )
        await context.add_init_script(fingerprint_script(fp))
        return context
