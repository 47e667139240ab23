"""
Bluesky XRPC client

只做三件事：登入 (createSession)、搜尋貼文 (searchPosts)、建立記錄 (createRecord)。
搜尋結果為 newest-first；時間窗過濾交給 collector / aggregator。
"""

import functools
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from hourstats.config import BlueskyConfig
from hourstats.errors import PublishFailed, SearchError, SearchRequestRejected, TransientSearchError
from hourstats.models import Item, SearchPage
from hourstats.utils.time import parse_iso8601

logger = logging.getLogger(__name__)

SEARCH_ENDPOINT = "/xrpc/app.bsky.feed.searchPosts"
SESSION_ENDPOINT = "/xrpc/com.atproto.server.createSession"
CREATE_RECORD_ENDPOINT = "/xrpc/com.atproto.repo.createRecord"


def _search_retry(method):
    """可重試錯誤 (5xx / 429 / timeout) 做 exponential backoff，次數由 config 決定"""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        retrying = retry(
            stop=stop_after_attempt(self.config.max_request_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, min=0, max=30),
            retry=retry_if_exception_type(TransientSearchError),
            reraise=True,
        )
        return retrying(method)(self, *args, **kwargs)

    return wrapper


def parse_post_view(post_view: Dict[str, Any], blocked_labels: Optional[List[str]] = None) -> Optional[Item]:
    """
    將 searchPosts 的 postView 轉為 Item

    Args:
        post_view: API 回傳的單篇貼文
        blocked_labels: 需要略過的 moderation labels

    Returns:
        Item，或 None (時間格式錯誤 / 被 label 擋掉 / 缺 URI)
    """
    uri = post_view.get("uri") or ""
    if not uri:
        return None

    labels = {label.get("val") for label in post_view.get("labels") or []}
    if blocked_labels and labels.intersection(blocked_labels):
        logger.debug(f"Filtering out labelled post: {uri}")
        return None

    record = post_view.get("record") or {}
    author = post_view.get("author") or {}

    # indexedAt 是 search index 的排序依據，缺少時退回 record.createdAt
    timestamp = post_view.get("indexedAt") or record.get("createdAt")
    try:
        created_at = parse_iso8601(str(timestamp or ""))
    except ValueError:
        logger.warning(f"Skipping post with invalid timestamp {timestamp!r}: {uri}")
        return None

    return Item(
        external_id=uri,
        content_id=post_view.get("cid") or "",
        text=record.get("text") or "",
        author_handle=author.get("handle") or "",
        created_at=created_at,
        like_count=int(post_view.get("likeCount") or 0),
        repost_count=int(post_view.get("repostCount") or 0),
        reply_count=int(post_view.get("replyCount") or 0),
    )


class BlueskyClient:
    """Bluesky API client (httpx.Client 可跨 thread 共用)"""

    def __init__(
        self,
        config: BlueskyConfig,
        handle: str = "",
        password: str = "",
        transport: Optional[httpx.BaseTransport] = None,
        retry_backoff_seconds: float = 1.0
    ):
        """
        Args:
            config: Bluesky 設定
            handle: 帳號 handle (空字串 = 匿名搜尋)
            password: app password
            transport: 測試用 httpx transport
            retry_backoff_seconds: backoff 基數
        """
        self.config = config
        self.handle = handle
        self.password = password
        self.retry_backoff_seconds = retry_backoff_seconds
        self._access_jwt: Optional[str] = None
        self.did: Optional[str] = None
        self._http = httpx.Client(timeout=config.request_timeout_seconds, transport=transport)

    @property
    def is_authenticated(self) -> bool:
        return self._access_jwt is not None

    def _headers(self) -> Dict[str, str]:
        if self._access_jwt:
            return {"Authorization": f"Bearer {self._access_jwt}"}
        return {}

    def authenticate(self) -> None:
        """以 handle / app password 登入"""
        if not self.handle or not self.password:
            raise SearchError("Bluesky credentials are not configured")

        response = self._http.post(
            self.config.service_url + SESSION_ENDPOINT,
            json={"identifier": self.handle, "password": self.password},
        )
        if response.status_code != 200:
            raise SearchError(f"Failed to authenticate: HTTP {response.status_code} {response.text[:200]}")

        session = response.json()
        self._access_jwt = session["accessJwt"]
        self.did = session.get("did")
        logger.info(f"✓ Authenticated with Bluesky as {session.get('handle', self.handle)}")

    @_search_retry
    def search(self, query: str, cursor: str, page_size: int) -> SearchPage:
        """
        搜尋一頁貼文

        Args:
            query: 搜尋字串
            cursor: 分頁 cursor ("" = 第一頁)
            page_size: 每頁筆數 (最多 100)

        Returns:
            SearchPage (newest-first)

        Raises:
            SearchRequestRejected: HTTP 400 (例如 cursor 過深)
            TransientSearchError: 重試耗盡
            SearchError: 其他錯誤
        """
        host = self.config.service_url if self.is_authenticated else self.config.search_url
        params: Dict[str, Any] = {"q": query, "limit": page_size, "sort": self.config.sort}
        if cursor:
            params["cursor"] = cursor
        if self.config.language:
            params["lang"] = self.config.language

        try:
            response = self._http.get(host + SEARCH_ENDPOINT, params=params, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning(f"Search timeout at cursor {cursor!r}: {e}")
            raise TransientSearchError(f"timeout at cursor {cursor!r}: {e}") from e
        except httpx.TransportError as e:
            raise TransientSearchError(f"transport error at cursor {cursor!r}: {e}") from e

        if response.status_code == 400:
            raise SearchRequestRejected(f"HTTP 400 at cursor {cursor!r}: {response.text[:200]}")
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Search HTTP {response.status_code} at cursor {cursor!r}, will retry")
            raise TransientSearchError(f"HTTP {response.status_code} at cursor {cursor!r}")
        if response.status_code != 200:
            raise SearchError(f"HTTP {response.status_code} at cursor {cursor!r}: {response.text[:200]}")

        body = response.json()
        items = []
        for post_view in body.get("posts") or []:
            item = parse_post_view(post_view, self.config.blocked_labels)
            if item is not None:
                items.append(item)

        next_cursor = body.get("cursor") or ""
        logger.debug(f"Search cursor={cursor!r}: {len(items)} items, next={next_cursor!r}")
        return SearchPage(items=items, next_cursor=next_cursor, has_more=bool(next_cursor))

    def create_record(self, record: Dict[str, Any], collection: str = "app.bsky.feed.post") -> Dict[str, str]:
        """
        建立 repo record (發文)

        Returns:
            {"uri": ..., "cid": ...}
        """
        if not self.is_authenticated:
            self.authenticate()

        response = self._http.post(
            self.config.service_url + CREATE_RECORD_ENDPOINT,
            json={"repo": self.did or self.handle, "collection": collection, "record": record},
            headers=self._headers(),
        )
        if response.status_code != 200:
            raise PublishFailed(f"createRecord failed: HTTP {response.status_code} {response.text[:200]}")

        body = response.json()
        return {"uri": body.get("uri", ""), "cid": body.get("cid", "")}

    def close(self) -> None:
        self._http.close()


def build_client(config: BlueskyConfig, handle: str = "", password: str = "") -> BlueskyClient:
    """建立 client；有 credentials 就先登入"""
    client = BlueskyClient(config, handle=handle, password=password)
    if handle and password:
        client.authenticate()
    return client
