"""
GitHub REST API client for Git Plugin Loader.

Covers repository verification, branch/tag listing and commit lookups.
Read responses are cached in-process for 15 minutes; the calls that drive
the "update available" decision (latest commit, compare) always go to the
network. Rate-limit exhaustion is reported as ``RateLimited`` with the
reset time so callers can tell it apart from other failures.
"""

import hashlib
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import __version__
from .errors import (
    ApiError,
    AuthFailed,
    NotFound,
    PluginLoaderError,
    RateLimited,
    TransportError,
)

GITHUB_API_URL = 'https://api.github.com'
CACHE_TTL = 900  # 15 minutes


def _iso_to_timestamp(iso_timestamp: str) -> int:
    """Convert an ISO 8601 timestamp (``...Z``) to unix seconds, 0 if unparseable."""
    if not iso_timestamp:
        return 0
    try:
        return int(datetime.fromisoformat(iso_timestamp.replace('Z', '+00:00')).timestamp())
    except ValueError:
        return 0


def _shape_commit(data: Dict[str, Any]) -> Dict[str, Any]:
    commit_meta = data.get('commit') or {}
    author = commit_meta.get('author') or {}
    date_iso = author.get('date', '')
    return {
        'sha': data.get('sha', ''),
        'message': commit_meta.get('message', ''),
        'author_name': author.get('name', ''),
        'author_email': author.get('email', ''),
        'date': date_iso,
        'unix_timestamp': _iso_to_timestamp(date_iso),
    }


def _shape_refs(data: Any) -> List[Dict[str, str]]:
    if not isinstance(data, list):
        raise TransportError('Unexpected GitHub API response.')
    refs = []
    for item in data:
        refs.append({
            'name': item.get('name', ''),
            'commit_sha': (item.get('commit') or {}).get('sha', ''),
        })
    return refs


class GitHubClient:
    """
    Client for the subset of the GitHub API Git Plugin Loader uses.

    The access token is read from the settings repository on every request
    (decrypted there), so a token saved by an administrator takes effect
    without rebuilding the client.
    """

    def __init__(self, settings=None, api_url: str = GITHUB_API_URL, timeout: int = 30,
                 token_timeout: int = 15, cache_ttl: int = CACHE_TTL,
                 session: Optional[requests.Session] = None):
        """
        Args:
            settings: SettingsRepository providing ``get_token()`` (optional)
            api_url: API base URL
            timeout: Timeout in seconds for regular requests
            token_timeout: Timeout in seconds for token verification
            cache_ttl: Lifetime of cached read responses in seconds
            session: Optional preconfigured requests session
        """
        self.settings = settings
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.token_timeout = token_timeout
        self.cache_ttl = cache_ttl
        self.logger = logging.getLogger(__name__)
        self.last_error = ''
        self.last_headers: Dict[str, str] = {}
        self._cache: Dict[str, Tuple[float, str, Any]] = {}  # key -> (stored_at, url, data)

        if session is None:
            session = requests.Session()
            # 403/429 are never retried and Retry-After is not honoured
            retry = Retry(total=3, backoff_factor=1, status_forcelist=[500, 502, 503, 504],
                          allowed_methods=['GET'], raise_on_status=False,
                          respect_retry_after_header=False)
            adapter = HTTPAdapter(max_retries=retry)
            session.mount('https://', adapter)
            session.mount('http://', adapter)
        self.session = session

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'Accept': 'application/vnd.github.v3+json',
            'User-Agent': f'Git-Plugin-Loader/{__version__}',
        }
        if token:
            headers['Authorization'] = f'token {token}'
        return headers

    def _get_token(self) -> str:
        if self.settings is None:
            return ''
        return self.settings.get_token()

    @staticmethod
    def _cache_key(url: str, params: Optional[Dict[str, Any]]) -> str:
        raw = url + json.dumps(params or {}, sort_keys=True)
        return hashlib.sha256(raw.encode('utf-8')).hexdigest()

    def request(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                use_cache: bool = True) -> Any:
        """
        GET ``endpoint`` and return the decoded JSON body.

        Raises:
            RateLimited: 403/429 with no remaining quota
            AuthFailed: 401
            NotFound: 404
            ApiError: any other error status
            TransportError: network failure or undecodable body
        """
        url = self.api_url + endpoint
        cache_key = self._cache_key(url, params)

        if use_cache and cache_key in self._cache:
            stored_at, _url, cached = self._cache[cache_key]
            if time.time() - stored_at < self.cache_ttl:
                return cached
            del self._cache[cache_key]

        try:
            data = self._fetch(url, params)
        except PluginLoaderError as e:
            self.last_error = e.message
            raise

        self.last_error = ''
        if use_cache:
            now = time.time()
            self._prune_cache(now)
            self._cache[cache_key] = (now, url, data)
        return data

    def _prune_cache(self, now: float) -> None:
        """Drop expired entries so the cache only holds live responses."""
        expired = [key for key, (stored_at, _url, _data) in self._cache.items()
                   if now - stored_at >= self.cache_ttl]
        for key in expired:
            del self._cache[key]

    def _fetch(self, url: str, params: Optional[Dict[str, Any]]) -> Any:
        headers = self._headers(self._get_token())
        try:
            response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise TransportError('GitHub API request timed out.')
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Network error: {e}")

        self.last_headers = {k.lower(): v for k, v in response.headers.items()}
        status_code = response.status_code

        if status_code in (403, 429):
            remaining = self.last_headers.get('x-ratelimit-remaining')
            if remaining is not None and remaining.strip() == '0':
                reset_at = self._header_int('x-ratelimit-reset')
                reset_text = datetime.fromtimestamp(reset_at).strftime('%H:%M:%S') if reset_at else 'an unknown time'
                self.logger.warning(f"GitHub API rate limit exhausted (resets at {reset_text})")
                raise RateLimited(f"GitHub API rate limit exceeded. Resets at {reset_text}.", reset_at=reset_at)

        if status_code >= 400:
            message = self._error_message(response) or f"GitHub API error: HTTP {status_code}"
            self.logger.debug(f"GitHub API request failed: {status_code} for {url}: {message}")
            if status_code == 401:
                raise AuthFailed(message)
            if status_code == 404:
                raise NotFound(message)
            raise ApiError(message, status_code=status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise TransportError('Failed to parse GitHub API response.')

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            decoded = response.json()
        except ValueError:
            return ''
        if isinstance(decoded, dict) and decoded.get('message'):
            return str(decoded['message'])
        return ''

    def _header_int(self, name: str) -> int:
        try:
            return int(self.last_headers.get(name, 0))
        except (TypeError, ValueError):
            return 0

    def get_rate_limit_info(self) -> Dict[str, int]:
        """Quota figures from the most recent response."""
        return {
            'limit': self._header_int('x-ratelimit-limit'),
            'remaining': self._header_int('x-ratelimit-remaining'),
            'reset': self._header_int('x-ratelimit-reset'),
        }

    def clear_cache(self, owner: Optional[str] = None, repo: Optional[str] = None) -> int:
        """Drop cached responses for one repository, or all of them. Returns the count removed."""
        if owner and repo:
            prefix = f"{self.api_url}/repos/{owner}/{repo}"
            keys = [k for k, (_t, url, _d) in self._cache.items()
                    if url == prefix or url.startswith(prefix + '/')]
        else:
            keys = list(self._cache)
        for key in keys:
            del self._cache[key]
        return len(keys)

    # ------------------------------------------------------------------
    # Repository endpoints
    # ------------------------------------------------------------------

    @staticmethod
    def _repo_path(owner: str, repo: str) -> str:
        return f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"

    def get_repo(self, owner: str, repo: str) -> Dict[str, Any]:
        return self.request(self._repo_path(owner, repo))

    def verify_repo(self, owner: str, repo: str) -> bool:
        """True if the repository exists and is readable with the current credentials."""
        try:
            self.get_repo(owner, repo)
            return True
        except PluginLoaderError as e:
            self.logger.info(f"Repository {owner}/{repo} could not be verified: {e}")
            return False

    def is_private_repo(self, owner: str, repo: str) -> bool:
        """Visibility of a repository; unreadable repositories are assumed private."""
        try:
            repo_data = self.get_repo(owner, repo)
        except PluginLoaderError:
            return True
        return bool(repo_data and repo_data.get('private'))

    def get_branches(self, owner: str, repo: str, per_page: int = 100) -> List[Dict[str, str]]:
        data = self.request(f"{self._repo_path(owner, repo)}/branches", params={'per_page': per_page})
        return _shape_refs(data)

    def get_tags(self, owner: str, repo: str, per_page: int = 100) -> List[Dict[str, str]]:
        data = self.request(f"{self._repo_path(owner, repo)}/tags", params={'per_page': per_page})
        return _shape_refs(data)

    def get_commit(self, owner: str, repo: str, sha: str) -> Dict[str, Any]:
        data = self.request(f"{self._repo_path(owner, repo)}/commits/{quote(sha, safe='/')}")
        return _shape_commit(data or {})

    def get_latest_commit(self, owner: str, repo: str, branch: str = 'main') -> Dict[str, Any]:
        """Tip of ``branch``. Never served from cache."""
        data = self.request(f"{self._repo_path(owner, repo)}/commits/{quote(branch, safe='/')}",
                            use_cache=False)
        commit = _shape_commit(data or {})
        if not commit['sha']:
            raise TransportError('GitHub API response did not include a commit SHA.')
        return commit

    def get_commits(self, owner: str, repo: str, branch: str = 'main', per_page: int = 10) -> List[Dict[str, Any]]:
        data = self.request(f"{self._repo_path(owner, repo)}/commits",
                            params={'sha': branch, 'per_page': per_page})
        if not isinstance(data, list):
            raise TransportError('Unexpected GitHub API response.')
        return [_shape_commit(item) for item in data]

    def compare_commits(self, owner: str, repo: str, base: str, head: str) -> Dict[str, Any]:
        """Divergence between two refs. Never served from cache."""
        data = self.request(
            f"{self._repo_path(owner, repo)}/compare/{quote(base, safe='/')}...{quote(head, safe='/')}",
            use_cache=False,
        ) or {}
        return {
            'status': data.get('status', ''),
            'ahead_by': data.get('ahead_by', 0),
            'behind_by': data.get('behind_by', 0),
            'total_commits': data.get('total_commits', 0),
        }

    def get_contents(self, owner: str, repo: str, path: str = '', ref: Optional[str] = None) -> Any:
        params = {'ref': ref} if ref else None
        return self.request(f"{self._repo_path(owner, repo)}/contents/{quote(path, safe='/')}", params=params)

    def verify_token(self, token: str) -> bool:
        """
        Check a token against ``GET /user``.

        Returns:
            True only for an HTTP 200 answer; network failures count as invalid
        """
        if not token:
            return False
        try:
            response = self.session.get(
                f"{self.api_url}/user",
                headers=self._headers(token),
                timeout=self.token_timeout,
            )
        except requests.exceptions.RequestException as e:
            self.last_error = f"Network error: {e}"
            self.logger.warning(f"Token verification failed: {self.last_error}")
            return False
        if response.status_code != 200:
            self.last_error = self._error_message(response) or f"GitHub API error: HTTP {response.status_code}"
            return False
        return True
