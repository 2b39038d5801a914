"""Per-platform page strategies — where conversations, messages and inputs live.

The agent only talks to a ``PlatformStrategy``. ``SelectorStrategy`` drives a
Playwright page from a table of CSS selectors, so adding a site is mostly a
matter of adding a ``SiteSelectors`` entry.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote, urlparse

from replyfleet.db.models import ConversationalEvent, make_event
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.auto.strategies")

# Conversation list items beyond this are ignored on one scan.
MAX_SCAN_ITEMS = 40
OPEN_TIMEOUT_MS = 10_000
MIN_MESSAGE_LENGTH = 1


@dataclass
class Conversation:
    """A conversation entry found on the listing view."""

    key: str
    counterpart: str
    element: Any = None
    priority: bool = False


@dataclass(frozen=True)
class SiteSelectors:
    name: str
    host_patterns: tuple[str, ...]
    conversations_url: str | None
    messaging_path: str
    conversation_path: str
    conversation_item: str
    unread_marker: str
    counterpart_label: str
    thread_header: str
    message_row: str
    message_text: str
    input_field: tuple[str, ...]
    send_button: tuple[str, ...]
    outgoing_selector: str | None = None
    outgoing_markers: tuple[str, ...] = ()
    priority_item: str | None = None
    priority_author: str | None = None
    priority_reply_button: str | None = None
    # Group 1 is the handle; matched against link hrefs (and the page URL when
    # url_handle is set).
    handle_pattern: str = r"/@([^/?#]+)"
    url_handle: bool = False
    # Opening a conversation navigates away from the listing.
    leaves_listing: bool = False


INSTAGRAM = SiteSelectors(
    name="instagram",
    host_patterns=("instagram.com",),
    conversations_url="https://www.instagram.com/direct/inbox/",
    messaging_path="/direct/",
    conversation_path="/direct/t/",
    conversation_item='div[role="listitem"], a[href*="/direct/t/"]',
    unread_marker='[aria-label*="unread" i], [role="status"]',
    counterpart_label='span[dir="auto"]',
    thread_header='header [dir="auto"] span, a[role="link"][href^="/"] span[dir="auto"]',
    message_row='div[role="row"]',
    message_text='div[dir="auto"]',
    input_field=(
        '[contenteditable="true"][role="textbox"]',
        'textarea[placeholder*="Message"]',
        "textarea",
    ),
    send_button=(
        'div[role="button"]:has-text("Send")',
        'button:has-text("Send")',
        'button[type="submit"]',
    ),
    outgoing_markers=("Seen", "Delivered"),
)

THREADS = SiteSelectors(
    name="threads",
    host_patterns=("threads.net", "threads.com"),
    conversations_url="https://www.threads.net/activity",
    messaging_path="",
    conversation_path="/post/",
    conversation_item='a[href*="/post/"]',
    unread_marker='[aria-label*="unread" i]',
    counterpart_label='a[href^="/@"]',
    thread_header='main article a[href^="/@"]',
    message_row="main article",
    message_text="span[dir='auto'], p",
    input_field=(
        '[contenteditable="true"]',
        'textarea[placeholder*="Reply"]',
        "textarea",
    ),
    send_button=(
        'div[role="button"]:has-text("Post")',
        'button:has-text("Post")',
        'button[type="submit"]',
    ),
    priority_item='div[role="main"] a[href*="/post/"]:has(svg[aria-label*="Repl" i])',
    priority_author='a[href^="/@"]',
    priority_reply_button='div[role="button"]:has-text("Reply")',
    url_handle=True,
    leaves_listing=True,
)

SNAPCHAT = SiteSelectors(
    name="snapchat",
    host_patterns=("snapchat.com",),
    conversations_url="https://web.snapchat.com/",
    messaging_path="",
    conversation_path="",
    conversation_item='[class*="ChatListItem"], [class*="conversationListItem"], [data-testid*="conversation"]',
    unread_marker='[class*="unread"], [class*="Unread"], [class*="badge"], [class*="Badge"]',
    counterpart_label='[class*="FriendName"], [class*="friendName"], [class*="Username"], [class*="username"]',
    thread_header=(
        '[class*="ConversationHeader"] [class*="FriendName"], '
        '[class*="chatHeader"] [class*="Username"], '
        '[class*="ConversationHeader"], [class*="chatHeader"]'
    ),
    message_row='[class*="ChatMessage"], [class*="Message"], [class*="message"]',
    message_text='[class*="MessageContent"], [class*="messageContent"], [class*="text"]',
    input_field=(
        '[contenteditable="true"]',
        'textarea[class*="Input"]',
        'textarea[class*="input"]',
        '[class*="MessageInput"] textarea',
    ),
    send_button=(
        'button[class*="Send"]',
        'button[aria-label*="Send"]',
        '[class*="sendButton"]',
    ),
    outgoing_selector='[class*="sent"], [class*="Sent"], [class*="outgoing"], [class*="self"]',
)

REDDIT = SiteSelectors(
    name="reddit",
    host_patterns=("reddit.com",),
    conversations_url="https://www.reddit.com/message/inbox/",
    messaging_path="/message/",
    conversation_path="/message/messages/",
    conversation_item='a[href*="/message/messages/"]',
    unread_marker='[aria-label*="unread" i], [data-unread="true"], [data-is-unread="true"], .notifications-badge',
    counterpart_label='a[href*="/user/"]',
    thread_header='h1 a[href*="/user/"], [class*="header"] a[href*="/user/"]',
    message_row='.room-message, [data-testid*="message"], .message',
    message_text=".room-message-text, p, span",
    input_field=(
        'textarea[name="text"]',
        '[contenteditable="true"][role="textbox"]',
        "textarea",
        '[contenteditable="true"]',
    ),
    send_button=(
        'button[type="submit"]',
        'button:has-text("Send")',
        'button[aria-label*="Send" i]',
    ),
    handle_pattern=r"/(?:user|u)/([^/?#]+)",
    url_handle=True,
    leaves_listing=True,
)

UNIVERSAL = SiteSelectors(
    name="universal",
    host_patterns=("*",),
    conversations_url=None,
    messaging_path="",
    conversation_path="",
    conversation_item='[class*="conversation"], [class*="thread"], [role="listitem"]',
    unread_marker='[class*="unread"], [aria-label*="unread" i]',
    counterpart_label='[class*="name"], [title]',
    thread_header='[class*="header"] [class*="name"], header [title]',
    message_row='[class*="message"], [class*="bubble"]',
    message_text='[dir="auto"], span, p',
    input_field=(
        '[contenteditable="true"]',
        'textarea[class*="message"]',
        'textarea[class*="input"]',
        "textarea",
        'input[type="text"]',
    ),
    send_button=(
        '[data-testid="send-button"]',
        '[data-testid*="send"]',
        'button[aria-label*="Send"]',
        'button[type="submit"]',
        'button[class*="send"]',
    ),
    outgoing_selector='[class*="outgoing"], [class*="sent"], [class*="self"], [class*="mine"]',
)

SITES: tuple[SiteSelectors, ...] = (INSTAGRAM, THREADS, SNAPCHAT, REDDIT)


class PlatformStrategy(ABC):
    """Capability interface the agent uses to read and write a page."""

    name: str = "abstract"

    @abstractmethod
    def is_conversational_view(self, page: Any) -> bool:
        """True when the page shows the messaging area (listing or a thread)."""

    @abstractmethod
    async def navigate_to_conversations(self, page: Any) -> None: ...

    async def find_priority_conversations(self, page: Any) -> list[Conversation]:
        return []

    async def return_to_listing(self, page: Any) -> bool:
        """Go back to the conversation listing if opening left it.

        Returns:
            True if the page navigated away from the open conversation.
        """
        return False

    @abstractmethod
    async def find_unread_conversations(self, page: Any) -> list[Conversation]: ...

    @abstractmethod
    async def open_conversation(self, page: Any, conversation: Conversation) -> bool: ...

    @abstractmethod
    async def current_counterpart(self, page: Any) -> str | None: ...

    @abstractmethod
    async def extract_latest_incoming(
        self,
        page: Any,
        conversation: Conversation | None,
        expected_counterpart: str | None,
    ) -> ConversationalEvent | None:
        """Return the newest incoming message of the open conversation."""

    @abstractmethod
    async def locate_input_control(self, page: Any) -> Any | None: ...

    @abstractmethod
    async def locate_submit_control(self, page: Any) -> Any | None: ...


async def _first_present(page: Any, selectors: tuple[str, ...]) -> Any | None:
    for selector in selectors:
        locator = page.locator(selector).first
        try:
            if await locator.count() and await locator.is_visible():
                return locator
        except Exception as e:
            logger.debug(f"Selector {selector!r} failed: {e}")
    return None


async def _text_of(locator: Any) -> str:
    try:
        return (await locator.inner_text()).strip()
    except Exception as e:
        logger.debug(f"Could not read text: {e}")
        return ""


class SelectorStrategy(PlatformStrategy):
    """Strategy backed by a ``SiteSelectors`` table over Playwright locators."""

    def __init__(self, selectors: SiteSelectors) -> None:
        self.sel = selectors
        self.name = selectors.name
        self._handle_re = re.compile(selectors.handle_pattern)

    def is_conversational_view(self, page: Any) -> bool:
        url = page.url or ""
        if not url or url == "about:blank":
            return False
        return self.sel.messaging_path in url

    async def navigate_to_conversations(self, page: Any) -> None:
        if self.sel.conversations_url:
            await page.goto(self.sel.conversations_url, wait_until="domcontentloaded")

    async def return_to_listing(self, page: Any) -> bool:
        url = self.sel.conversations_url
        if not self.sel.leaves_listing or not url or (page.url or "").startswith(url):
            return False
        await page.goto(url, wait_until="domcontentloaded")
        return True

    async def find_priority_conversations(self, page: Any) -> list[Conversation]:
        if not self.sel.priority_item:
            return []
        items = page.locator(self.sel.priority_item)
        found = []
        for i in range(min(await items.count(), MAX_SCAN_ITEMS)):
            item = items.nth(i)
            author = await self._counterpart_of(item, self.sel.priority_author)
            if not author:
                continue
            key = await item.get_attribute("href") or f"{self.name}-priority-{author}"
            found.append(Conversation(key=key, counterpart=author, element=item, priority=True))
        return found

    async def find_unread_conversations(self, page: Any) -> list[Conversation]:
        items = page.locator(self.sel.conversation_item)
        found = []
        seen_keys: set[str] = set()
        for i in range(min(await items.count(), MAX_SCAN_ITEMS)):
            item = items.nth(i)
            if not await item.locator(self.sel.unread_marker).count():
                continue
            counterpart = await self._counterpart_of(item, self.sel.counterpart_label)
            if not counterpart:
                continue
            key = await self._conversation_key(item, counterpart)
            if key in seen_keys:
                continue
            seen_keys.add(key)
            found.append(Conversation(key=key, counterpart=counterpart, element=item))
        return found

    async def open_conversation(self, page: Any, conversation: Conversation) -> bool:
        target = conversation.element
        if target is None:
            return False
        try:
            link = target.locator(f'a[href*="{self.sel.conversation_path}"]').first
            if self.sel.conversation_path and await link.count():
                target = link
            await target.click(timeout=OPEN_TIMEOUT_MS)
            await page.locator(self.sel.message_row).first.wait_for(
                state="attached", timeout=OPEN_TIMEOUT_MS
            )
        except Exception as e:
            logger.info(f"Could not open conversation {conversation.key}: {e}")
            return False
        return True

    async def current_counterpart(self, page: Any) -> str | None:
        if self.sel.url_handle:
            match = self._handle_re.search(page.url or "")
            if match:
                return unquote(match.group(1))
        header = page.locator(self.sel.thread_header).first
        if not await header.count():
            return None
        handle = self._handle_in(await header.get_attribute("href"))
        if handle:
            return handle
        text = await _text_of(header)
        return _clean_handle(text) or None

    async def extract_latest_incoming(
        self,
        page: Any,
        conversation: Conversation | None,
        expected_counterpart: str | None,
    ) -> ConversationalEvent | None:
        counterpart = (
            conversation.counterpart if conversation else None
        ) or await self.current_counterpart(page)
        if not counterpart:
            return None

        rows = page.locator(self.sel.message_row)
        total = await rows.count()
        for i in range(total - 1, -1, -1):
            row = rows.nth(i)
            if await self._is_outgoing(row):
                continue
            text = await self._message_text(row)
            if len(text) < MIN_MESSAGE_LENGTH:
                continue
            return make_event(counterpart=counterpart, text=text, element=row)
        return None

    async def locate_input_control(self, page: Any) -> Any | None:
        found = await _first_present(page, self.sel.input_field)
        if found is None and self.sel.priority_reply_button:
            # Threads only shows the composer after "Reply" is clicked.
            button = await _first_present(page, (self.sel.priority_reply_button,))
            if button is not None:
                await button.click()
                found = await _first_present(page, self.sel.input_field)
        if found is None and self.sel is not UNIVERSAL:
            found = await _first_present(page, UNIVERSAL.input_field)
        return found

    async def locate_submit_control(self, page: Any) -> Any | None:
        return await _first_present(page, self.sel.send_button)

    async def _is_outgoing(self, row: Any) -> bool:
        if self.sel.outgoing_selector and await row.locator(self.sel.outgoing_selector).count():
            return True
        if self.sel.outgoing_markers:
            text = await _text_of(row)
            return any(marker in text for marker in self.sel.outgoing_markers)
        return False

    async def _message_text(self, row: Any) -> str:
        inner = row.locator(self.sel.message_text).first
        if await inner.count():
            text = await _text_of(inner)
            if text:
                return text
        return await _text_of(row)

    async def _counterpart_of(self, item: Any, selector: str | None) -> str:
        if selector:
            label = item.locator(selector).first
            if await label.count():
                handle = self._handle_in(await label.get_attribute("href"))
                return handle or _clean_handle(await _text_of(label))
        handle = self._handle_in(await item.get_attribute("href"))
        return handle or _clean_handle(await _text_of(item))

    def _handle_in(self, href: str | None) -> str:
        match = self._handle_re.search(href or "")
        return unquote(match.group(1)) if match else ""

    async def _conversation_key(self, item: Any, counterpart: str) -> str:
        href = await item.get_attribute("href")
        if not href:
            link = item.locator("a[href]").first
            if await link.count():
                href = await link.get_attribute("href")
        return href or f"{self.name}-{counterpart.lower()}"


def _clean_handle(text: str) -> str:
    first_line = (text or "").strip().split("\n", 1)[0]
    return first_line.strip().lstrip("@")[:80]


def strategy_for_url(url: str) -> PlatformStrategy:
    """Pick the strategy whose host patterns match ``url``; universal otherwise."""
    host = (urlparse(url).hostname or "").lower()
    for site in SITES:
        if any(host == p or host.endswith("." + p) for p in site.host_patterns):
            return SelectorStrategy(site)
    logger.info(f"No specific strategy for {host or url!r}, using universal")
    return SelectorStrategy(UNIVERSAL)
