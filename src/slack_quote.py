"""Quote linked Slack messages into Notion pages.

Scans the top-level blocks of a Notion page for Slack message permalinks
(mentions, inline links or link previews), fetches the live text of each
message and keeps a quote block with that text directly below the reference.
Link previews are swapped for a plain link paragraph, since the quote now
carries the content.

Usage:
    slack-quote <notion-page-url>        # reconcile the page
    slack-quote <slack-permalink>        # print the message text
    slack-quote --serve [--http]         # run as an MCP server

Tokens: read from a JSON secrets file (--secrets, default .secrets.json).
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import parse_qs, urlsplit

import httpx
import parsy as P
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("slack-quote")


# =============================================================================
# Errors
# =============================================================================


class QuoteSyncError(Exception):
    """Base class for errors that abort a run."""


class InvalidInputError(QuoteSyncError):
    """The input URL or the local configuration cannot be used."""


class ServiceError(QuoteSyncError):
    """Slack or Notion explicitly reported a failure.

    Not retried: these usually mean bad credentials, missing access or
    rate limiting rather than a missing message.
    """

    def __init__(self, service: str, code: str, detail: Optional[str] = None):
        self.service = service
        self.code = code
        self.detail = detail
        message = f"{service} API error: {code}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)

    @classmethod
    def from_http_error(cls, service: str, e: httpx.HTTPError) -> "ServiceError":
        """Wrap an httpx failure (status error or transport error)."""
        if isinstance(e, httpx.HTTPStatusError):
            return cls(service, f"HTTP {e.response.status_code}", _http_error_detail(e))
        return cls(service, "REQUEST_FAILED", f"{type(e).__name__}: {e}")


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract error detail from an HTTP status error.

    Args:
        e: The HTTP status error exception.
        max_len: Maximum length of error detail to return.

    Returns:
        Truncated error response text or string representation of the error.
    """
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., INVALID_URL, SERVICE_ERROR)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


# Common error hints
HINTS = {
    "page_url": "Pass a Notion page URL ending in the 32-character page ID.",
    "message_url": "Pass a Slack message permalink (Copy link on the message).",
    "secrets": "Start the server with --secrets pointing at a JSON file with slackApiToken and notionApiToken.",
    "invalid_token": "Token is invalid or expired. Check the secrets file.",
    "missing_capability": "Share the page with the Notion integration and invite the Slack app to the channel.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
}

_SLACK_AUTH_ERRORS = {"invalid_auth", "not_authed", "account_inactive", "token_revoked", "token_expired"}
_SLACK_ACCESS_ERRORS = {"channel_not_found", "not_in_channel", "missing_scope", "thread_not_found"}


def _service_error_hint(e: ServiceError) -> Optional[str]:
    """Pick a hint for a service error, if one applies."""
    if e.code in _SLACK_AUTH_ERRORS or e.code == "HTTP 401":
        return HINTS["invalid_token"]
    if e.code in _SLACK_ACCESS_ERRORS or e.code in ("HTTP 403", "HTTP 404"):
        return HINTS["missing_capability"]
    if e.code in ("ratelimited", "HTTP 429"):
        return HINTS["rate_limited"]
    return None


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_SECRETS_PATH = ".secrets.json"


@dataclass(frozen=True)
class Secrets:
    """API tokens for both services."""
    slack_api_token: str
    notion_api_token: str


def load_secrets(path: Path) -> Secrets:
    """Read the two API tokens from a JSON secrets file.

    Expected shape: {"slackApiToken": "xoxb-...", "notionApiToken": "ntn_..."}

    Raises:
        InvalidInputError: If the file is missing, unreadable or lacks a token.
    """
    if not path.exists():
        raise InvalidInputError(f"Secrets file not found: {path}")
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Secrets file is not valid JSON: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise InvalidInputError(f"Secrets file must contain a JSON object: {path}")

    tokens = {}
    for key in ("slackApiToken", "notionApiToken"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise InvalidInputError(f"Secrets file is missing {key}: {path}")
        tokens[key] = value.strip()

    return Secrets(
        slack_api_token=tokens["slackApiToken"],
        notion_api_token=tokens["notionApiToken"],
    )


# =============================================================================
# Reference Parsing
# =============================================================================

# https://<workspace>.slack.com/archives/<channel>/p<digits>[?thread_ts=...]
SLACK_PERMALINK_PATTERN = re.compile(
    r'^https://(?:[a-z0-9-]+\.)+slack\.com/archives/([^/?#]+)/p([0-9]{10,})(?:[/?#].*)?$'
)
SLACK_TS_PATTERN = re.compile(r'^[0-9]{10}\.?[0-9]*$')
# Notion page IDs: 32 lowercase hex chars at the end of the URL path
PAGE_ID_PATTERN = re.compile(r'([a-f0-9]{32})$')


@dataclass(frozen=True)
class MessageIdentity:
    """Canonical identity of one Slack message."""
    channel_id: str
    timestamp: str  # "1234567890.123456"
    thread_ts: Optional[str] = None  # parent timestamp for thread replies


@dataclass(frozen=True)
class Reference:
    """A Slack message reference found in one block."""
    source_url: str
    identity: MessageIdentity


def format_slack_timestamp(ts: str) -> str:
    """Convert permalink digits to Slack's timestamp format.

    "1234567890123456" -> "1234567890.123456". Input that already has a
    decimal point is normalized the same way.
    """
    digits = ts.replace(".", "")
    return f"{digits[:10]}.{digits[10:]}"


def strip_slack_timestamp(ts: str) -> str:
    """Inverse of format_slack_timestamp: "1234567890.123456" -> "1234567890123456"."""
    return ts.replace(".", "")


def parse_reference(url: str) -> Optional[MessageIdentity]:
    """Parse a Slack message permalink.

    Handles formats like:
    - https://acme.slack.com/archives/C0123/p1699999999000001
    - https://acme.slack.com/archives/C0123/p1699999999000001?thread_ts=1699999999.000000&cid=C0123

    Returns:
        MessageIdentity, or None if the URL is not a message permalink.
    """
    match = SLACK_PERMALINK_PATTERN.match(url.strip())
    if not match:
        return None

    channel_id, digits = match.groups()

    thread_ts = None
    query = parse_qs(urlsplit(url.strip()).query)
    raw_thread_ts = query.get("thread_ts", [None])[0]
    if raw_thread_ts:
        if SLACK_TS_PATTERN.match(raw_thread_ts):
            thread_ts = format_slack_timestamp(raw_thread_ts)
        else:
            logger.debug(f"Ignoring malformed thread_ts in {url}")

    return MessageIdentity(
        channel_id=channel_id,
        timestamp=format_slack_timestamp(digits),
        thread_ts=thread_ts,
    )


def extract_page_id(url: str) -> Optional[str]:
    """Extract the 32-character Notion page ID from a page URL.

    The query string and fragment are ignored, so links copied with
    ?pvs=4 or #<block> still resolve.
    """
    path = urlsplit(url.strip()).path
    match = PAGE_ID_PATTERN.search(path)
    return match.group(1) if match else None


def resolve_target(url: str) -> MessageIdentity | str:
    """Classify a CLI/tool argument as a Slack message or a Notion page.

    Returns:
        MessageIdentity for a permalink, the page ID for a Notion URL.

    Raises:
        InvalidInputError: If the URL is neither.
    """
    identity = parse_reference(url)
    if identity is not None:
        return identity
    page_id = extract_page_id(url)
    if page_id is not None:
        return page_id
    raise InvalidInputError(f"Not a Slack message permalink or Notion page URL: {url}")


# =============================================================================
# Slack mrkdwn → Notion Rich Text (Parsy-based)
# =============================================================================

# Notion rejects rich text objects with more than 2000 characters of content
NOTION_TEXT_LIMIT = 2000
# Notion rejects rich_text arrays with more than 100 objects
NOTION_RICH_TEXT_MAX_ITEMS = 100

_SLACK_ENTITIES = {"&amp;": "&", "&lt;": "<", "&gt;": ">"}


@dataclass
class RichTextSpan:
    """A span of rich text with formatting."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    code: bool = False
    link: Optional[str] = None


def _apply_formatting(spans: list[RichTextSpan], **kwargs) -> list[RichTextSpan]:
    """Apply formatting attributes to spans."""
    for span in spans:
        for key, value in kwargs.items():
            setattr(span, key, value)
    return spans


def _merge_adjacent_spans(spans: list[RichTextSpan]) -> list[RichTextSpan]:
    """Merge adjacent spans with identical formatting."""
    merged: list[RichTextSpan] = []
    for span in spans:
        if (merged and
            merged[-1].bold == span.bold and
            merged[-1].italic == span.italic and
            merged[-1].strikethrough == span.strikethrough and
            merged[-1].code == span.code and
            merged[-1].link == span.link):
            merged[-1].text += span.text
        else:
            merged.append(span)
    return merged


def _unescape(text: str) -> str:
    for entity, char in _SLACK_ENTITIES.items():
        text = text.replace(entity, char)
    return text


def _angle_span(target: str, label: Optional[str]) -> RichTextSpan:
    """Render <...> markup: links, user/channel mentions and specials."""
    if target.startswith("@"):
        return RichTextSpan(text=f"@{label}" if label else target)
    if target.startswith("#"):
        return RichTextSpan(text=f"#{label}" if label else target)
    if target.startswith("!"):
        # <!here>, <!channel>, <!subteam^ID|@team>
        return RichTextSpan(text=label or f"@{target[1:]}")
    return RichTextSpan(text=_unescape(label or target), link=_unescape(target))


def _make_mrkdwn_parser():
    """Build the Slack mrkdwn parser using parsy combinators.

    Delimiters only open at a word boundary and must hug their content,
    so snake_case names and "2 * 3 * 4" stay literal.
    """

    def parse_inner(text: str) -> list[RichTextSpan]:
        try:
            return _mrkdwn_parser_impl.parse(text)
        except P.ParseError:
            return [RichTextSpan(text=text)]

    def delimited(char: str, **formatting):
        body = P.regex(rf'[^{char}\s](?:[^{char}\n]*[^{char}\s])?')
        return (
            P.string(char) >> body << P.string(char)
        ).map(lambda inner: _apply_formatting(parse_inner(inner), **formatting))

    entity = P.regex(r'&(?:amp|lt|gt);').map(lambda e: RichTextSpan(text=_SLACK_ENTITIES[e]))

    # <https://example.com|label>, <@U123>, <#C123|general>, <!here>
    @P.generate
    def angle():
        yield P.string('<')
        target = yield P.regex(r'[^|>\n]+')
        label = yield (P.string('|') >> P.regex(r'[^>\n]*')).optional()
        yield P.string('>')
        return _angle_span(target, label)

    code = (
        P.string('`') >> P.regex(r'[^`]+') << P.string('`')
    ).map(lambda t: RichTextSpan(text=_unescape(t), code=True))

    bold = delimited('*', bold=True)
    italic = delimited('_', italic=True)
    strikethrough = delimited('~', strikethrough=True)

    # Words swallow intra-word delimiters: snake_case, a*b
    literal_word = P.regex(r'[^\W_]+(?:[_*~][^\W_]+)*').map(lambda t: RichTextSpan(text=t))
    literal_other = P.regex(r'[^<*_~`&\w]+').map(lambda t: RichTextSpan(text=t))
    special_fallback = P.any_char.map(lambda c: RichTextSpan(text=c))

    def flatten(items):
        flat = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    _mrkdwn_parser_impl = (
        entity |
        angle |
        code |
        bold |
        italic |
        strikethrough |
        literal_word |
        literal_other |
        special_fallback
    ).many().map(flatten)

    return _mrkdwn_parser_impl


_mrkdwn_parser = _make_mrkdwn_parser()


def parse_mrkdwn(text: str) -> list[RichTextSpan]:
    """Parse Slack mrkdwn into rich text spans.

    Plain text comes back as a single unformatted span with the same content.
    """
    if not text:
        return []
    try:
        return _merge_adjacent_spans(_mrkdwn_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"mrkdwn parse error: {e}")
        return [RichTextSpan(text=text)]


def rich_text_spans_to_notion(spans: list[RichTextSpan]) -> list[dict]:
    """Convert RichTextSpan list to Notion API rich_text format.

    Spans longer than NOTION_TEXT_LIMIT are split into several objects with
    the same formatting.
    """
    result = []
    for span in spans:
        annotations = {}
        if span.bold:
            annotations["bold"] = True
        if span.italic:
            annotations["italic"] = True
        if span.strikethrough:
            annotations["strikethrough"] = True
        if span.code:
            annotations["code"] = True

        for start in range(0, max(len(span.text), 1), NOTION_TEXT_LIMIT):
            obj: dict = {
                "type": "text",
                "text": {"content": span.text[start:start + NOTION_TEXT_LIMIT]}
            }
            if span.link:
                obj["text"]["link"] = {"url": span.link}
            if annotations:
                obj["annotations"] = dict(annotations)
            result.append(obj)

    return result


def _text_to_rich_text(text: str) -> list[dict]:
    """Convert Slack message text to a Notion rich_text array.

    Messages with too many formatted pieces for one rich_text array lose
    their formatting and are sent as plain text, split only at
    NOTION_TEXT_LIMIT.
    """
    spans = parse_mrkdwn(text)
    rich_text = rich_text_spans_to_notion(spans)
    if len(rich_text) <= NOTION_RICH_TEXT_MAX_ITEMS:
        return rich_text

    logger.info(f"Quote has {len(rich_text)} rich text pieces, sending as plain text")
    plain = "".join(span.text for span in spans)
    rich_text = rich_text_spans_to_notion([RichTextSpan(text=plain)])
    if len(rich_text) > NOTION_RICH_TEXT_MAX_ITEMS:
        logger.warning(f"Quote truncated to {NOTION_RICH_TEXT_MAX_ITEMS * NOTION_TEXT_LIMIT} characters")
        rich_text = rich_text[:NOTION_RICH_TEXT_MAX_ITEMS]
    return rich_text


# =============================================================================
# Slack API Client
# =============================================================================

SLACK_API_BASE = "https://slack.com/api"

# Rows requested around the target timestamp. The target is bounded on both
# sides, so this only matters when Slack also returns the thread parent.
MESSAGE_FETCH_LIMIT = 20


class SlackClient:
    """Minimal async Slack Web API client for conversation reads."""

    def __init__(self, token: str, client: Optional[httpx.AsyncClient] = None):
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def __aenter__(self) -> "SlackClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, params: dict) -> dict:
        """Call a Web API method, raising ServiceError unless Slack says ok."""
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            response = await self._client.get(
                f"{SLACK_API_BASE}/{method}", headers=headers, params=params
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ServiceError.from_http_error("slack", e) from e

        data = response.json()
        if not data.get("ok"):
            raise ServiceError("slack", data.get("error", "unknown_error"), method)
        logger.debug(f"slack {method} {params}: {len(data.get('messages', []))} messages")
        return data

    async def conversations_history(
        self,
        channel: str,
        *,
        latest: str,
        oldest: Optional[str] = None,
        limit: int = MESSAGE_FETCH_LIMIT,
        inclusive: bool = True
    ) -> list[dict]:
        """Fetch top-level channel messages at or before `latest`."""
        params = {
            "channel": channel,
            "latest": latest,
            "limit": limit,
            "inclusive": "true" if inclusive else "false",
        }
        if oldest is not None:
            params["oldest"] = oldest
        data = await self._call("conversations.history", params)
        return data.get("messages", [])

    async def conversations_replies(
        self,
        channel: str,
        thread_ts: str,
        *,
        latest: str,
        oldest: Optional[str] = None,
        limit: int = MESSAGE_FETCH_LIMIT,
        inclusive: bool = True
    ) -> list[dict]:
        """Fetch replies of the thread rooted at `thread_ts`, at or before `latest`."""
        params = {
            "channel": channel,
            "ts": thread_ts,
            "latest": latest,
            "limit": limit,
            "inclusive": "true" if inclusive else "false",
        }
        if oldest is not None:
            params["oldest"] = oldest
        data = await self._call("conversations.replies", params)
        return data.get("messages", [])


# =============================================================================
# Message Fetching
# =============================================================================


async def fetch_message(slack: SlackClient, identity: MessageIdentity) -> Optional[str]:
    """Fetch the current text of exactly the identified message.

    Thread replies are read from the thread, everything else from channel
    history. Results are scanned for an exact timestamp match rather than
    trusting the first row.

    Returns:
        The message text, or None if no message has that timestamp (deleted,
        hidden from the app, or a bad link).

    Raises:
        ServiceError: If Slack reports a failure.
    """
    ts = identity.timestamp
    if identity.thread_ts:
        messages = await slack.conversations_replies(
            identity.channel_id, identity.thread_ts,
            latest=ts, oldest=ts, limit=MESSAGE_FETCH_LIMIT
        )
    else:
        messages = await slack.conversations_history(
            identity.channel_id,
            latest=ts, oldest=ts, limit=MESSAGE_FETCH_LIMIT
        )

    for message in messages:
        if message.get("ts") == ts:
            return message.get("text") or None

    logger.info(f"No message {ts} in {identity.channel_id} ({len(messages)} rows checked)")
    return None


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"


class NotionClient:
    """Minimal async Notion client for block reads and edits."""

    def __init__(self, token: str, client: Optional[httpx.AsyncClient] = None):
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None
    ) -> dict:
        """Make authenticated request to Notion API."""
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.request(
                method,
                f"{NOTION_API_BASE}{endpoint}",
                headers=headers,
                json=json_body,
                params=params,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ServiceError.from_http_error("notion", e) from e
        return response.json()

    async def list_children(self, block_id: str) -> list[dict]:
        """Fetch all immediate children of a block or page, following pagination."""
        blocks = []
        start_cursor = None

        while True:
            params = {"page_size": 100}
            if start_cursor:
                params["start_cursor"] = start_cursor

            result = await self._request("GET", f"/blocks/{block_id}/children", params=params)
            blocks.extend(result.get("results", []))

            if not result.get("has_more"):
                break
            start_cursor = result.get("next_cursor")

        return blocks

    async def append_children(
        self,
        parent_id: str,
        children: list[dict],
        after: Optional[str] = None
    ) -> list[dict]:
        """Append blocks to a parent, optionally right after a sibling block.

        Returns:
            List of created block objects with IDs.
        """
        body: dict = {"children": children}
        if after:
            body["after"] = after
        result = await self._request("PATCH", f"/blocks/{parent_id}/children", json_body=body)
        return result.get("results", [])

    async def update_block(self, block_id: str, body: dict) -> dict:
        return await self._request("PATCH", f"/blocks/{block_id}", json_body=body)

    async def delete_block(self, block_id: str) -> dict:
        return await self._request("DELETE", f"/blocks/{block_id}")


# =============================================================================
# Page Reconciliation
# =============================================================================


class BlockKind(Enum):
    """Block types the reconciler distinguishes; everything else is OTHER."""
    PARAGRAPH = "paragraph"
    QUOTE = "quote"
    LINK_PREVIEW = "link_preview"
    OTHER = "other"


def block_kind(block: dict) -> BlockKind:
    try:
        return BlockKind(block.get("type"))
    except ValueError:
        return BlockKind.OTHER


def _span_urls(rich_text: list[dict]) -> Iterator[str]:
    """Yield candidate URLs from rich text spans, in order.

    Mentions contribute their href, text spans their link.
    """
    for span in rich_text:
        span_type = span.get("type")
        if span_type == "mention":
            if span.get("href"):
                yield span["href"]
        elif span_type == "text":
            link = (span.get("text") or {}).get("link") or {}
            if link.get("url"):
                yield link["url"]


def find_reference(block: dict) -> Optional[Reference]:
    """Find the Slack message reference carried by a block, if any.

    Paragraphs use the first span whose URL is a Slack permalink; later spans
    are not inspected. Link previews use their single URL.
    """
    kind = block_kind(block)

    if kind is BlockKind.PARAGRAPH:
        candidates = _span_urls(block.get("paragraph", {}).get("rich_text", []))
    elif kind is BlockKind.LINK_PREVIEW:
        url = block.get("link_preview", {}).get("url")
        candidates = iter([url] if url else [])
    else:
        return None

    for url in candidates:
        identity = parse_reference(url)
        if identity is not None:
            return Reference(source_url=url, identity=identity)
    return None


def quote_block(rich_text: list[dict]) -> dict:
    return {"type": "quote", "quote": {"rich_text": rich_text}}


def link_paragraph_block(url: str) -> dict:
    """Paragraph with the URL as visible link text."""
    return {
        "type": "paragraph",
        "paragraph": {"rich_text": rich_text_spans_to_notion([RichTextSpan(text=url, link=url)])}
    }


@dataclass
class ReconcileResult:
    """What one reconciliation pass did to a page."""
    blocks_scanned: int = 0
    inserted: int = 0
    updated: int = 0
    replaced: int = 0
    skipped: int = 0
    references: list[Reference] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"scanned {self.blocks_scanned} blocks, "
            f"{len(self.references)} Slack references: "
            f"{self.inserted} quotes inserted, {self.updated} updated, "
            f"{self.replaced} link previews replaced, {self.skipped} skipped"
        )


async def reconcile_page(
    notion: NotionClient,
    slack: SlackClient,
    page_id: str
) -> ReconcileResult:
    """Insert or refresh Slack quotes below every referencing block of a page.

    The page's direct children are read once; the scan walks that snapshot
    by index, so blocks inserted during the pass are never visited and the
    "next block" lookahead always refers to the original ordering. All edits
    are keyed by block ID.

    Per referencing block:
    - next block is a quote: update it in place, otherwise insert a quote
      right after the block
    - link preview: also insert a link paragraph right after it (ahead of the
      quote) and delete the preview

    Raises:
        ServiceError: On the first Slack or Notion failure. Edits already
            made to earlier blocks are kept.
    """
    blocks = tuple(await notion.list_children(page_id))
    result = ReconcileResult(blocks_scanned=len(blocks))
    logger.info(f"Page {page_id}: {len(blocks)} top-level blocks")

    for index, block in enumerate(blocks):
        reference = find_reference(block)
        if reference is None:
            continue

        identity = reference.identity
        result.references.append(reference)
        logger.info(
            f"Block {block['id']}: Slack message {identity.channel_id}/{identity.timestamp}"
            + (f" in thread {identity.thread_ts}" if identity.thread_ts else "")
        )

        text = await fetch_message(slack, identity)
        if not text:
            logger.info(f"Block {block['id']}: nothing to quote, skipping")
            result.skipped += 1
            continue

        rich_text = _text_to_rich_text(text)
        is_preview = block_kind(block) is BlockKind.LINK_PREVIEW
        next_block = blocks[index + 1] if index + 1 < len(blocks) else None

        new_children = []
        if is_preview:
            new_children.append(link_paragraph_block(reference.source_url))

        if next_block is not None and block_kind(next_block) is BlockKind.QUOTE:
            await notion.update_block(next_block["id"], {"quote": {"rich_text": rich_text}})
            result.updated += 1
            logger.info(f"Block {block['id']}: updated quote {next_block['id']}")
        else:
            new_children.append(quote_block(rich_text))
            result.inserted += 1

        if new_children:
            await notion.append_children(page_id, new_children, after=block["id"])
            logger.info(f"Block {block['id']}: inserted {len(new_children)} block(s) after it")

        if is_preview:
            await notion.delete_block(block["id"])
            result.replaced += 1
            logger.info(f"Block {block['id']}: replaced link preview with plain link")

    return result


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("slack-quote", host="127.0.0.1", port=2053)

_secrets: Optional[Secrets] = None


def _get_secrets() -> Secrets:
    """Get the API tokens (loaded from --secrets at startup)."""
    if _secrets is None:
        raise RuntimeError("No API tokens. Pass --secrets <path> on the command line.")
    return _secrets


def _make_clients(secrets: Secrets) -> tuple[NotionClient, SlackClient]:
    return NotionClient(secrets.notion_api_token), SlackClient(secrets.slack_api_token)


@mcp.tool()
async def slack_quote_sync(page_url: str) -> str:
    """Quote every Slack message linked from a Notion page, directly below its link.

    Existing quotes right below a link are refreshed instead of duplicated.
    Slack link previews are replaced by a plain link plus the quote.

    Args:
        page_url: Notion page URL (ending in the 32-character page ID)

    Returns:
        A one-line summary of the changes, or an error message.
    """
    page_id = extract_page_id(page_url)
    if not page_id:
        return _error("INVALID_URL", "Not a Notion page URL", hint=HINTS["page_url"], ref=page_url)

    try:
        secrets = _get_secrets()
    except RuntimeError as e:
        return _error("NO_TOKEN", str(e), hint=HINTS["secrets"])

    notion, slack = _make_clients(secrets)
    try:
        async with notion, slack:
            result = await reconcile_page(notion, slack, page_id)
    except ServiceError as e:
        return _error("SERVICE_ERROR", str(e), hint=_service_error_hint(e), ref=page_id)
    return result.summary()


@mcp.tool()
async def slack_quote_preview(message_url: str) -> str:
    """Return the current text of a Slack message.

    Args:
        message_url: Slack message permalink (thread replies supported)

    Returns:
        The message text, or an error message.
    """
    identity = parse_reference(message_url)
    if identity is None:
        return _error("INVALID_URL", "Not a Slack message permalink", hint=HINTS["message_url"], ref=message_url)

    try:
        secrets = _get_secrets()
    except RuntimeError as e:
        return _error("NO_TOKEN", str(e), hint=HINTS["secrets"])

    notion, slack = _make_clients(secrets)
    try:
        async with notion, slack:
            text = await fetch_message(slack, identity)
    except ServiceError as e:
        return _error("SERVICE_ERROR", str(e), hint=_service_error_hint(e), ref=message_url)
    if text is None:
        return _error("NOT_FOUND", "No message with that timestamp", ref=message_url)
    return text


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    return JSONResponse({
        "status": "ok",
        "secrets_loaded": _secrets is not None,
    })


def _serve(http: bool) -> None:
    if http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info("Starting slack-quote MCP server on http://127.0.0.1:2053")
        uvicorn.run(app, host="127.0.0.1", port=2053, log_level="warning")
    else:
        mcp.run()


# =============================================================================
# Main Entry Point
# =============================================================================


async def run(target: MessageIdentity | str, secrets: Secrets) -> Optional[ReconcileResult]:
    """Preview a message or reconcile a page, depending on the target."""
    notion, slack = _make_clients(secrets)
    async with notion, slack:
        if isinstance(target, MessageIdentity):
            text = await fetch_message(slack, target)
            if text is None:
                logger.warning(f"No message found for {target.channel_id}/{target.timestamp}")
            else:
                print(text)
            return None

        result = await reconcile_page(notion, slack, target)
        logger.info(f"Page {target}: {result.summary()}")
        return result


def main(argv: Optional[list[str]] = None) -> None:
    """Run slack-quote.

    Usage:
        slack-quote https://www.notion.so/My-Page-<32 hex>
        slack-quote https://acme.slack.com/archives/C0123/p1699999999000001
        slack-quote --serve [--http]
    """
    import argparse

    parser = argparse.ArgumentParser(description="Quote linked Slack messages into a Notion page")
    parser.add_argument(
        "url",
        nargs="?",
        help="Notion page URL to update, or Slack message permalink to print"
    )
    parser.add_argument(
        "--secrets",
        default=DEFAULT_SECRETS_PATH,
        help="Path to JSON file with slackApiToken and notionApiToken"
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run as an MCP server instead of processing a single URL"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="With --serve: run as HTTP server on localhost:2053 instead of stdio"
    )
    parser.add_argument("--verbose", action="store_true", help="Log API details")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    if not args.serve and not args.url:
        parser.error("a URL is required unless --serve is given")
    if args.serve and args.url:
        parser.error("--serve does not take a URL")

    global _secrets
    try:
        target = None if args.serve else resolve_target(args.url)
        secrets_path = Path(args.secrets).expanduser()
        _secrets = load_secrets(secrets_path)
        logger.info(f"API tokens loaded from {secrets_path}")

        if args.serve:
            _serve(args.http)
            return
        asyncio.run(run(target, _secrets))
    except QuoteSyncError as e:
        logger.error(str(e))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
