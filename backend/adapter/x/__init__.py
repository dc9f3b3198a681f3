"""
X (Twitter) API gateway for the engagement agent.

Every outbound call to the X API v2 goes through XGateway, which composes
the RateTracker (quota windows from response headers) and the ResultCache
(fallback for reads). Reads degrade to cached results when throttled or
failing; writes never do.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests
from dotenv import load_dotenv

from monitoring import monitor, EventType
from services.result_cache import CacheEntry, ResultCache, make_signature
from ..models import Post, EngagementMetrics, SearchFilters, SearchResult, ResultSource, WriteResult
from ..rate_tracker import RateTracker

load_dotenv()

logger = logging.getLogger(__name__)

ENDPOINT_SEARCH = "/tweets/search/recent"
ENDPOINT_LOOKUP = "/tweets/:id"
ENDPOINT_CREATE = "/tweets"
ENDPOINT_LIKE = "/users/:id/likes"
ENDPOINT_RETWEET = "/users/:id/retweets"
ENDPOINT_ME = "/users/me"

TWEET_FIELDS = "id,text,created_at,author_id,public_metrics,lang"
USER_FIELDS = "username,name,verified"


class FailureKind(str, Enum):
    """Classification of a non-2xx response."""
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


def classify_status(status_code: int) -> FailureKind:
    """Map any non-2xx HTTP status to a FailureKind."""
    if status_code == 401:
        return FailureKind.UNAUTHORIZED
    if status_code == 403:
        return FailureKind.FORBIDDEN
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if 500 <= status_code <= 599:
        return FailureKind.SERVER_ERROR
    return FailureKind.UNKNOWN


class XAdapterError(Exception):
    """Base exception for gateway errors."""
    pass


class XAuthenticationError(XAdapterError):
    """Raised when the credential is missing or rejected (401). Never retried."""
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class XForbiddenError(XAuthenticationError):
    """Raised when the credential lacks access to an endpoint (403). Never retried."""
    pass


class XRateLimitError(XAdapterError):
    """Raised when an endpoint is exhausted and no cached fallback exists."""
    def __init__(
        self,
        message: str,
        reset_time: int = None,
        remaining: int = None,
        limit: int = None,
        retry_delay: float = 0.0,
        endpoint: str = None,
    ):
        super().__init__(message)
        self.reset_time = reset_time  # Unix timestamp when limit resets
        self.remaining = remaining    # Remaining requests in window
        self.limit = limit            # Total requests allowed in window
        self.retry_delay = retry_delay  # Seconds until a retry makes sense
        self.endpoint = endpoint


class XAPIError(XAdapterError):
    """Raised when the API returns an unclassified error or the transport fails."""
    def __init__(self, message: str, status_code: int = None, response_text: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None


class XServerError(XAPIError):
    """Raised on 5xx responses."""
    pass


class XGateway:
    """
    Rate-limit-aware, cache-backed gateway to X API v2.

    Usage:
        gateway = XGateway()  # Uses X_BEARER_TOKEN env var
        result = gateway.search("need a designer", SearchFilters(languages=["en"]))
        if result.source != ResultSource.LIVE:
            print(result.message)
    """

    BASE_URL = "https://api.x.com/2"

    def __init__(
        self,
        bearer_token: Optional[str] = None,
        rate_tracker: Optional[RateTracker] = None,
        cache: Optional[ResultCache] = None,
        user_id: Optional[str] = None,
        timeout: float = 15,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the gateway.

        Args:
            bearer_token: X API bearer token (or set X_BEARER_TOKEN env var)
            rate_tracker: Shared rate tracker (a private one is created if omitted)
            cache: Shared result cache (a private one is created if omitted)
            user_id: Authenticated account ID for likes/retweets (or X_USER_ID env var)
            timeout: Per-request timeout in seconds
            max_retries: Retries for reads on server/transport errors
            retry_base_delay: First backoff delay in seconds, doubled per attempt
            retry_max_delay: Backoff ceiling in seconds
            sleep: Sleep function used between retries
        """
        self.bearer_token = bearer_token or os.environ.get("X_BEARER_TOKEN")
        self.user_id = user_id or os.environ.get("X_USER_ID")

        if not self.bearer_token:
            logger.warning("No X_BEARER_TOKEN provided - gateway will fail on API calls")
            self._is_configured = False
        else:
            self._is_configured = True

        self.headers = {
            "Authorization": f"Bearer {self.bearer_token}" if self.bearer_token else "",
            "Content-Type": "application/json",
        }

        self.rate_tracker = rate_tracker or RateTracker()
        self.cache = cache or ResultCache()
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep

        # One lock per endpoint: consult tracker -> call -> update tracker/cache is atomic
        self._endpoint_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    @property
    def is_configured(self) -> bool:
        """Check if gateway is configured with credentials."""
        return self._is_configured

    def _endpoint_lock(self, endpoint: str) -> threading.Lock:
        with self._locks_guard:
            return self._endpoint_locks[endpoint]

    def _require_configured(self) -> None:
        if not self._is_configured:
            raise XAuthenticationError("X gateway not configured - set X_BEARER_TOKEN")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _retry_after_seconds(self, response) -> Optional[float]:
        """Seconds to wait according to a 429 response's headers."""
        headers = {str(k).lower(): v for k, v in response.headers.items()}
        retry_after = headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                logger.debug(f"Non-numeric retry-after header: {retry_after!r}")
        reset = headers.get("x-rate-limit-reset")
        if reset:
            try:
                return max(0.0, float(reset) - self.rate_tracker.now())
            except ValueError:
                logger.debug(f"Non-numeric x-rate-limit-reset header: {reset!r}")
        return None

    def _rate_limit_error(self, endpoint: str) -> XRateLimitError:
        window = self.rate_tracker.get_window(endpoint)
        return XRateLimitError(
            self.rate_tracker.rate_limit_message(endpoint),
            reset_time=int(window.reset_at) if window else None,
            remaining=window.remaining if window else None,
            limit=window.limit if window else None,
            retry_delay=self.rate_tracker.retry_delay(endpoint),
            endpoint=endpoint,
        )

    def _raise_for_status(self, endpoint: str, response) -> None:
        """Translate a non-2xx response into a typed error."""
        status = response.status_code
        if status < 400:
            return

        kind = classify_status(status)
        if kind == FailureKind.UNAUTHORIZED:
            raise XAuthenticationError("Invalid or expired bearer token", status_code=status)
        if kind == FailureKind.FORBIDDEN:
            raise XForbiddenError(f"X API access forbidden for {endpoint}", status_code=status)
        if kind == FailureKind.RATE_LIMITED:
            self.rate_tracker.record_hard_limit_error(endpoint, self._retry_after_seconds(response))
            raise self._rate_limit_error(endpoint)
        if kind == FailureKind.SERVER_ERROR:
            raise XServerError(
                f"X API server error: {status}",
                status_code=status,
                response_text=response.text
            )
        raise XAPIError(
            f"X API error: {status}",
            status_code=status,
            response_text=response.text
        )

    def _execute(
        self,
        endpoint: str,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Perform one HTTP call, update the tracker, and return the decoded body."""
        self._require_configured()
        url = f"{self.BASE_URL}{path}"

        try:
            start_time_ms = time.time() * 1000
            if method == "GET":
                response = requests.get(url, headers=self.headers, params=params, timeout=self.timeout)
            else:
                response = requests.post(url, headers=self.headers, json=json_body, timeout=self.timeout)
            latency_ms = (time.time() * 1000) - start_time_ms
        except requests.exceptions.Timeout:
            monitor.metrics.record_x_api_call(0, error=True)
            raise XAPIError("X API request timed out")
        except requests.exceptions.ConnectionError:
            monitor.metrics.record_x_api_call(0, error=True)
            raise XAPIError("Failed to connect to X API")
        except requests.exceptions.RequestException as e:
            monitor.metrics.record_x_api_call(0, error=True)
            raise XAPIError(f"X API request failed: {e}")

        # Always update rate limit status from headers (even on errors)
        window = self.rate_tracker.record_from_response(endpoint, response.headers)
        if window is not None and window.remaining < self.rate_tracker.low_water_mark:
            monitor.activity.add_event(
                EventType.RATE_LIMIT_WARNING,
                subject=endpoint,
                remaining=window.remaining,
            )

        is_error = response.status_code >= 400
        monitor.metrics.record_x_api_call(latency_ms, error=is_error)
        if is_error:
            monitor.activity.add_event(EventType.ERROR, subject=endpoint, error=f"X API {response.status_code}")

        self._raise_for_status(endpoint, response)

        monitor.activity.add_event(
            EventType.X_API_CALL,
            subject=endpoint,
            method=method,
            latency_ms=round(latency_ms, 1)
        )

        try:
            return response.json()
        except ValueError:
            raise XAPIError("X API returned a non-JSON body", status_code=response.status_code)

    def _execute_with_retry(self, endpoint: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        _execute with bounded exponential backoff on server and transport errors.

        Credential, rate-limit and other client errors are raised immediately.
        """
        attempt = 0
        while True:
            try:
                return self._execute(endpoint, method, path, **kwargs)
            except XAPIError as e:
                retryable = isinstance(e, XServerError) or e.is_transport_error
                if not retryable or attempt >= self.max_retries:
                    raise
                delay = min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)
                attempt += 1
                logger.warning(
                    f"Retry {attempt}/{self.max_retries} for {endpoint} after {type(e).__name__}: {e} "
                    f"(waiting {delay:.1f}s)"
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # Parsing helpers
    # ------------------------------------------------------------------

    def _parse_post(self, tweet: dict, users_map: dict) -> Post:
        """Convert a raw tweet object into a Post."""
        author_id = tweet.get("author_id") or "unknown"
        user = users_map.get(author_id, {})

        created_at = tweet.get("created_at")
        if created_at:
            timestamp = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        else:
            timestamp = datetime.now(timezone.utc)

        public_metrics = tweet.get("public_metrics", {})
        metrics = EngagementMetrics(
            likes=public_metrics.get("like_count", 0),
            retweets=public_metrics.get("retweet_count", 0),
            replies=public_metrics.get("reply_count", 0),
            quotes=public_metrics.get("quote_count", 0),
        )

        return Post(
            id=tweet["id"],
            text=tweet.get("text", ""),
            author_id=author_id,
            author_username=user.get("username", "unknown"),
            created_at=timestamp,
            metrics=metrics,
            lang=tweet.get("lang"),
        )

    def _users_map(self, data: dict) -> Dict[str, dict]:
        return {user["id"]: user for user in data.get("includes", {}).get("users", [])}

    def _parse_posts(self, tweets: List[dict], data: dict) -> List[Post]:
        """Parse raw tweets, reporting malformed payloads as XAPIError."""
        try:
            users_map = self._users_map(data)
            return [self._parse_post(tweet, users_map) for tweet in tweets]
        except (KeyError, TypeError, ValueError) as e:
            raise XAPIError(f"X API returned a malformed post: {e}")

    @staticmethod
    def _normalize_keywords(keywords: List[str]) -> List[str]:
        """Strip, de-duplicate (case-insensitively) and sort keywords."""
        unique: Dict[str, str] = {}
        for keyword in keywords:
            keyword = keyword.strip()
            if keyword:
                unique.setdefault(keyword.lower(), keyword)
        return [unique[key] for key in sorted(unique)]

    def build_query(self, query: str, filters: SearchFilters) -> str:
        """Append filter operators to a search query."""
        base = query.strip() or " OR ".join(self._normalize_keywords(filters.keywords))
        if not base:
            raise ValueError("Search needs a query or at least one keyword")

        parts = [base]
        lowered = base.lower()
        if filters.exclude_retweets and "-is:retweet" not in lowered:
            parts.append("-is:retweet")
        if filters.exclude_replies and "-is:reply" not in lowered:
            parts.append("-is:reply")
        if filters.languages:
            langs = " OR ".join(f"lang:{lang}" for lang in filters.languages)
            parts.append(f"({langs})" if len(filters.languages) > 1 else langs)
        if filters.authors:
            authors = " OR ".join(f"from:{author.lstrip('@')}" for author in filters.authors)
            parts.append(f"({authors})" if len(filters.authors) > 1 else authors)

        return " ".join(parts)

    # ------------------------------------------------------------------
    # Reads (cache-backed)
    # ------------------------------------------------------------------

    def _from_cache(
        self,
        entry: CacheEntry,
        query: str,
        source: ResultSource,
        message: Optional[str] = None,
    ) -> SearchResult:
        if source != ResultSource.CACHED_FRESH:
            monitor.metrics.record_cache_fallback()
            monitor.activity.add_event(
                EventType.CACHE_FALLBACK,
                subject=query,
                source=source.value,
                reason=message,
            )
        else:
            monitor.metrics.record_cache_hit()

        return SearchResult(
            posts=list(entry.payload["posts"]),
            query=query,
            signature=entry.signature,
            source=source,
            is_fresh=self.cache.is_fresh(entry),
            cached_at=entry.cached_at_dt,
            message=message,
        )

    def _cached_read(
        self,
        endpoint: str,
        query: str,
        signature: str,
        fetch: Callable[[], Dict[str, Any]],
        prefer_cache: bool = False,
    ) -> SearchResult:
        """
        Shared read path: tracker check, live call, cache write or fallback.

        Raises:
            XAuthenticationError: Credential missing or rejected
            XRateLimitError: Endpoint exhausted and nothing cached
            XAPIError: Call failed and nothing cached
        """
        self._require_configured()

        with self._endpoint_lock(endpoint):
            entry = self.cache.get(signature)

            if self.rate_tracker.is_limited(endpoint):
                return self._serve_rate_limited(endpoint, query, entry)

            if prefer_cache and entry is not None and self.cache.is_fresh(entry):
                logger.info(f"Returning fresh cached results for '{query}'")
                return self._from_cache(entry, query, ResultSource.CACHED_FRESH)

            if entry is None:
                monitor.metrics.record_cache_miss()

            try:
                payload = fetch()
            except XRateLimitError:
                return self._serve_rate_limited(endpoint, query, entry)
            except XAuthenticationError:
                raise
            except XAPIError as e:
                if entry is not None:
                    logger.warning(f"API call failed for '{query}', returning cached data: {e}")
                    return self._from_cache(entry, query, ResultSource.CACHED_DUE_TO_ERROR, message=str(e))
                raise

            stored = self.cache.put(signature, payload)

        logger.info(f"Fetched {len(payload['posts'])} posts for '{query}'")
        return SearchResult(
            posts=list(payload["posts"]),
            query=query,
            signature=signature,
            source=ResultSource.LIVE,
            is_fresh=True,
            cached_at=stored.cached_at_dt,
        )

    def _serve_rate_limited(self, endpoint: str, query: str, entry: Optional[CacheEntry]) -> SearchResult:
        message = self.rate_tracker.rate_limit_message(endpoint)
        if entry is not None:
            logger.warning(f"Rate limited for {endpoint}, returning cached data for '{query}': {message}")
            return self._from_cache(entry, query, ResultSource.CACHED_DUE_TO_RATE_LIMIT, message=message)

        logger.warning(f"Rate limited for {endpoint} with no cached data for '{query}': {message}")
        raise self._rate_limit_error(endpoint)

    def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        prefer_cache: bool = False,
    ) -> SearchResult:
        """
        Search recent posts matching a query.

        Args:
            query: Search query (falls back to OR-ed filter keywords if empty)
            filters: Filter parameters (languages, authors, retweet/reply exclusion)
            prefer_cache: Serve a fresh cache entry without calling the API

        Returns:
            SearchResult tagged live, cached_fresh, cached_due_to_rate_limit
            or cached_due_to_error

        Raises:
            XAuthenticationError: If not configured or the token is rejected
            XRateLimitError: If rate limited and nothing is cached
            XAPIError: If the API fails and nothing is cached
        """
        filters = filters or SearchFilters()
        search_query = self.build_query(query, filters)
        # Keyed on the caller's query and filters, not the assembled string
        signature = make_signature(query.strip(), filters.model_dump())

        params = {
            "query": search_query,
            "max_results": filters.max_results,
            "tweet.fields": TWEET_FIELDS,
            "expansions": "author_id",
            "user.fields": USER_FIELDS,
        }

        def fetch() -> Dict[str, Any]:
            data = self._execute_with_retry(ENDPOINT_SEARCH, "GET", ENDPOINT_SEARCH, params=params)
            posts = self._parse_posts(data.get("data") or [], data)
            if filters.min_engagement:
                posts = [p for p in posts if p.metrics.total >= filters.min_engagement]
            return {"posts": posts, "users": self._users_map(data), "result_count": len(posts)}

        return self._cached_read(ENDPOINT_SEARCH, search_query, signature, fetch, prefer_cache=prefer_cache)

    def get_post(self, post_id: str, prefer_cache: bool = False) -> SearchResult:
        """Look up a single post by ID (same cache and fallback rules as search)."""
        signature = make_signature(f"post:{post_id}")
        params = {
            "tweet.fields": TWEET_FIELDS,
            "expansions": "author_id",
            "user.fields": USER_FIELDS,
        }

        def fetch() -> Dict[str, Any]:
            data = self._execute_with_retry(ENDPOINT_LOOKUP, "GET", f"/tweets/{post_id}", params=params)
            tweet = data.get("data")
            posts = self._parse_posts([tweet], data) if tweet else []
            return {"posts": posts, "users": self._users_map(data), "result_count": len(posts)}

        return self._cached_read(ENDPOINT_LOOKUP, f"post:{post_id}", signature, fetch, prefer_cache=prefer_cache)

    # ------------------------------------------------------------------
    # Writes (never cached, never retried)
    # ------------------------------------------------------------------

    def _write(
        self,
        endpoint: str,
        path: str,
        body: Dict[str, Any],
        action: str,
        target_id: Optional[str] = None,
    ) -> WriteResult:
        self._require_configured()

        with self._endpoint_lock(endpoint):
            if self.rate_tracker.is_limited(endpoint):
                logger.warning(f"Rate limited for {endpoint}, refusing {action}")
                raise self._rate_limit_error(endpoint)
            data = self._execute(endpoint, "POST", path, json_body=body)

        result = data.get("data") or {}
        created_id = result.get("id")
        success = bool(created_id) or any(v is True for v in result.values())

        logger.info(f"X API {action} on {target_id or 'new post'}: success={success}")
        return WriteResult(action=action, target_id=target_id, created_id=created_id, success=success)

    def post_tweet(self, text: str) -> WriteResult:
        return self._write(ENDPOINT_CREATE, "/tweets", {"text": text}, action="post")

    def reply_to(self, post_id: str, text: str) -> WriteResult:
        body = {"text": text, "reply": {"in_reply_to_tweet_id": post_id}}
        return self._write(ENDPOINT_CREATE, "/tweets", body, action="reply", target_id=post_id)

    def quote(self, post_id: str, text: str) -> WriteResult:
        body = {"text": text, "quote_tweet_id": post_id}
        return self._write(ENDPOINT_CREATE, "/tweets", body, action="quote", target_id=post_id)

    def like(self, post_id: str) -> WriteResult:
        user_id = self._resolve_user_id()
        return self._write(ENDPOINT_LIKE, f"/users/{user_id}/likes", {"tweet_id": post_id}, action="like", target_id=post_id)

    def retweet(self, post_id: str) -> WriteResult:
        user_id = self._resolve_user_id()
        return self._write(
            ENDPOINT_RETWEET, f"/users/{user_id}/retweets", {"tweet_id": post_id}, action="retweet", target_id=post_id
        )

    def _fetch_me(self) -> Dict[str, Any]:
        with self._endpoint_lock(ENDPOINT_ME):
            if self.rate_tracker.is_limited(ENDPOINT_ME):
                raise self._rate_limit_error(ENDPOINT_ME)
            return self._execute(ENDPOINT_ME, "GET", ENDPOINT_ME)

    def _resolve_user_id(self) -> str:
        """Authenticated account ID, looked up once via /users/me when not configured."""
        if not self.user_id:
            data = self._fetch_me()
            user_id = (data.get("data") or {}).get("id")
            if not user_id:
                raise XAPIError("Could not resolve authenticated user ID from /users/me")
            self.user_id = user_id
        return self.user_id

    # ------------------------------------------------------------------
    # Administrative controls
    # ------------------------------------------------------------------

    def validate_credentials(self) -> bool:
        """Check the bearer token against /users/me."""
        try:
            self._fetch_me()
            return True
        except XAdapterError as e:
            logger.error(f"Credential validation failed: {e}")
            return False

    def get_rate_limit_status(self) -> Dict[str, Dict[str, Any]]:
        """Per-endpoint remaining count, reset time and human-readable message."""
        return self.rate_tracker.get_status()

    def reset_rate_limits(self) -> int:
        count = self.rate_tracker.clear_all()
        monitor.activity.add_event(EventType.ADMIN_RESET, subject="rate_limits", cleared=count)
        return count

    def reset_cache(self) -> int:
        count = self.cache.clear()
        monitor.activity.add_event(EventType.ADMIN_RESET, subject="cache", cleared=count)
        return count


__all__ = [
    "XGateway",
    "FailureKind",
    "classify_status",
    "XAdapterError",
    "XAuthenticationError",
    "XForbiddenError",
    "XRateLimitError",
    "XAPIError",
    "XServerError",
    "ENDPOINT_SEARCH",
    "ENDPOINT_LOOKUP",
    "ENDPOINT_CREATE",
    "ENDPOINT_LIKE",
    "ENDPOINT_RETWEET",
    "ENDPOINT_ME",
    "Post",  # Re-export for convenience
]
