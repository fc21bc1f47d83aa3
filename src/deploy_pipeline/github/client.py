"""GitHub API client for the pipeline's source-host interactions.

This module provides an async wrapper around the GitHub API for:
- Downloading a repository tarball at a ref or commit (Source stage)
- Reporting commit statuses for pull-request validation runs
- Registering the repository webhook that delivers pipeline events

Includes rate limiting and retry logic for API resilience.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from deploy_pipeline.errors import SourceFetchError
from deploy_pipeline.singleton.guard import ResourceAlreadyExists


logger = logging.getLogger(__name__)

COMMIT_STATES = ("pending", "success", "failure", "error")


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response, None on transport
            failure.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


def source_fetch_reason(error: GitHubAPIError) -> str:
    """Classify a GitHub failure as a SourceFetchError reason."""
    if isinstance(error, RateLimitError):
        return SourceFetchError.HOST_UNAVAILABLE
    if error.status_code in (401, 403):
        return SourceFetchError.AUTHENTICATION
    if error.status_code in (404, 422):
        return SourceFetchError.MISSING_REF
    return SourceFetchError.HOST_UNAVAILABLE


class GitHubClient:
    """Async client for the GitHub calls the pipeline makes.

    Transient failures (408 and 5xx responses, transport errors) are retried
    with capped exponential backoff and full jitter. An exhausted rate limit
    is not retried here: it surfaces at once as RateLimitError so that the
    failing stage can report it.

    Attributes:
        token: Token sent as a Bearer credential.
        base_url: API root; point it at GitHub Enterprise Server if needed.
        max_retries: Retries after the first attempt.
        base_delay: First backoff ceiling in seconds.
        max_delay: Largest backoff ceiling in seconds.
        timeout: Per-request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     data = await client.download_tarball("acme", "infra", "refs/heads/master")
    """

    RETRYABLE_STATUS_CODES = frozenset({408, 500, 502, 503, 504})

    API_VERSION = "2022-11-28"

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazily created HTTP session, recreated after close()."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": self.API_VERSION,
                    "User-Agent": "deploy-pipeline/1.0",
                },
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _backoff(self, attempt: int) -> float:
        ceiling = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, ceiling)

    @staticmethod
    def _int_header(response: httpx.Response, name: str) -> Optional[int]:
        try:
            return int(response.headers[name])
        except (KeyError, ValueError):
            return None

    def _rate_limit_error(self, response: httpx.Response) -> Optional[RateLimitError]:
        """RateLimitError for a throttled response, None for any other."""
        exhausted = (
            response.status_code == 403
            and self._int_header(response, "x-ratelimit-remaining") == 0
        )
        if response.status_code != 429 and not exhausted:
            return None

        reset_at = self._int_header(response, "x-ratelimit-reset")
        retry_after = self._int_header(response, "retry-after")
        if retry_after is None and reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "reset_at": reset_at,
                "retry_after": retry_after,
                "limit": self._int_header(response, "x-ratelimit-limit"),
            },
        )
        return RateLimitError(
            "GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            request_url=str(response.request.url),
        )

    async def _pause(self, attempt: int, method: str, path: str, cause: str) -> None:
        delay = self._backoff(attempt)
        logger.warning(
            "Retrying GitHub request",
            extra={
                "method": method,
                "path": path,
                "attempt": attempt + 1,
                "max_retries": self.max_retries,
                "delay": delay,
                "cause": cause,
            },
        )
        await asyncio.sleep(delay)

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one API request, retrying transient failures.

        Raises:
            RateLimitError: If GitHub throttled the request.
            GitHubAPIError: On any other error response, or when every
                attempt failed in transport.
        """
        cause = "no attempt made"

        for attempt in range(self.max_retries + 1):
            final = attempt == self.max_retries
            try:
                response = await self.client.request(method, path, json=json_data)
            except httpx.RequestError as e:
                cause = f"{type(e).__name__}: {e}"
                if not final:
                    await self._pause(attempt, method, path, cause)
                continue

            throttled = self._rate_limit_error(response)
            if throttled is not None:
                raise throttled

            if response.status_code in self.RETRYABLE_STATUS_CODES and not final:
                await self._pause(attempt, method, path, f"HTTP {response.status_code}")
                continue

            if response.is_error:
                logger.error(
                    "GitHub API error",
                    extra={
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "response_body": response.text[:500],
                    },
                )
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                    request_url=str(response.request.url),
                )

            return response

        logger.error(
            "GitHub request failed in transport on every attempt",
            extra={"method": method, "path": path, "cause": cause},
        )
        raise GitHubAPIError(
            f"{method} {path} failed after {self.max_retries + 1} attempts: {cause}",
            request_url=f"{self.base_url}{path}",
        )

    async def download_tarball(self, owner: str, repo: str, ref: str) -> bytes:
        """Download the repository tree at a ref or commit as a gzipped tarball.

        Args:
            owner: Repository owner.
            repo: Repository name.
            ref: Branch ref, tag or commit SHA.

        Returns:
            Gzipped tarball bytes (GitHub wraps entries in one top directory).

        Raises:
            SourceFetchError: With reason authentication, missing_ref or
                host_unavailable.
        """
        path = f"/repos/{owner}/{repo}/tarball/{ref}"

        logger.info(
            "Downloading source tarball",
            extra={"owner": owner, "repo": repo, "ref": ref},
        )

        try:
            response = await self._request(method="GET", path=path)
        except GitHubAPIError as e:
            reason = source_fetch_reason(e)
            raise SourceFetchError(
                f"Failed to fetch {owner}/{repo}@{ref}: {e.message}",
                reason=reason,
                provider="github",
                detail={"status_code": e.status_code, "ref": ref},
            ) from e

        data = response.content
        logger.info(
            "Source tarball downloaded",
            extra={"owner": owner, "repo": repo, "ref": ref, "size": len(data)},
        )
        return data

    async def create_commit_status(
        self,
        owner: str,
        repo: str,
        sha: str,
        state: str,
        context: str,
        description: str = "",
        target_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Report a commit status.

        Args:
            owner: Repository owner.
            repo: Repository name.
            sha: Commit SHA the status applies to.
            state: One of pending, success, failure, error.
            context: Status context label.
            description: Short description (truncated to 140 characters).
            target_url: Optional link to run details.

        Returns:
            The created status data from GitHub API.

        Raises:
            ValueError: If the state is not a GitHub commit state.
            GitHubAPIError: If the request fails.
        """
        if state not in COMMIT_STATES:
            raise ValueError(f"Invalid commit state: {state}")

        payload: Dict[str, Any] = {
            "state": state,
            "context": context,
            "description": description[:140],
        }
        if target_url:
            payload["target_url"] = target_url

        logger.info(
            "Creating commit status",
            extra={"owner": owner, "repo": repo, "sha": sha, "state": state},
        )

        response = await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/statuses/{sha}",
            json_data=payload,
        )
        return response.json()


    async def create_webhook(
        self,
        owner: str,
        repo: str,
        callback_url: str,
        secret: str,
        events: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Register a repository webhook signed with the shared secret.

        Args:
            owner: Repository owner.
            repo: Repository name.
            callback_url: URL GitHub delivers events to.
            secret: HMAC signing secret.
            events: Event names to subscribe to.

        Returns:
            The created hook data from GitHub API.

        Raises:
            ResourceAlreadyExists: If GitHub reports a hook for the URL exists.
            GitHubAPIError: If the request fails otherwise.
        """
        logger.info(
            "Registering repository webhook",
            extra={"owner": owner, "repo": repo, "callback_url": callback_url},
        )

        try:
            response = await self._request(
                method="POST",
                path=f"/repos/{owner}/{repo}/hooks",
                json_data={
                    "name": "web",
                    "active": True,
                    "events": events or ["push", "pull_request"],
                    "config": {
                        "url": callback_url,
                        "content_type": "json",
                        "secret": secret,
                        "insecure_ssl": "0",
                    },
                },
            )
        except GitHubAPIError as e:
            if e.status_code == 422 and "already exists" in (e.response_body or ""):
                raise ResourceAlreadyExists(
                    f"Webhook for {callback_url} already exists on {owner}/{repo}"
                ) from e
            raise

        result = response.json()
        logger.info(
            "Repository webhook registered",
            extra={"owner": owner, "repo": repo, "hook_id": result.get("id")},
        )
        return result

    async def health_check(self) -> bool:
        """Check if the GitHub API is accessible.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            response = await self.client.get("/rate_limit")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(
                "GitHub API health check failed",
                extra={"error": str(e)},
            )
            return False
