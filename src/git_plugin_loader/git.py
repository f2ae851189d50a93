"""
Git command wrapper.

Runs the small set of git operations Git Plugin Loader needs (clone, fetch,
checkout, reset, pull and a few read-only queries) as subprocesses. Commands
are passed as argument vectors, never through a shell, and only allow-listed
subcommands may run. Every working directory is canonicalized and must live
strictly inside the plugins root.

Git is forced into non-interactive mode: terminal prompts, credential
helpers and askpass programs are all disabled so a missing credential fails
immediately instead of hanging.
"""

import os
import re
import shutil
import subprocess
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

from .errors import (
    CheckoutFailed,
    CommandFailed,
    DirectoryExists,
    InvalidInput,
    InvalidPath,
    InvalidURL,
    ToolUnavailable,
)

PathLike = Union[str, Path]

ALLOWED_SUBCOMMANDS = frozenset({
    '--version',
    'branch',
    'checkout',
    'clone',
    'fetch',
    'log',
    'pull',
    'remote',
    'reset',
    'rev-list',
    'rev-parse',
    'status',
    'tag',
})

NON_INTERACTIVE_CONFIG = ['-c', 'credential.helper=', '-c', 'core.askPass=']

_SSH_URL_RE = re.compile(r'^git@github\.com:(?P<path>[^/]+/[^/]+?)(?:\.git)?$', re.IGNORECASE)
_HTTPS_URL_RE = re.compile(
    r'^https://github\.com/(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?$',
    re.IGNORECASE,
)
_REF_RE = re.compile(r'^[A-Za-z0-9._/+-]+$')

COMMIT_LOG_FORMAT = '%H%n%h%n%an%n%ae%n%at%n%s'


def sanitize_repo_url(url: str) -> str:
    """
    Normalize a GitHub repository URL to ``https://github.com/<owner>/<repo>.git``.

    Accepts ``https://github.com/<owner>/<repo>[.git]`` and
    ``git@github.com:<owner>/<repo>[.git]``.

    Raises:
        InvalidURL: for any other host, shape or character set
    """
    if not isinstance(url, str):
        raise InvalidURL('Invalid GitHub repository URL.')
    url = url.strip()

    ssh_match = _SSH_URL_RE.match(url)
    if ssh_match:
        url = f"https://github.com/{ssh_match.group('path')}"

    if url.endswith('/'):
        url = url[:-1]

    match = _HTTPS_URL_RE.match(url)
    if not match:
        raise InvalidURL('Invalid GitHub repository URL.')

    owner, repo = match.group('owner'), match.group('repo')
    if owner in ('.', '..') or repo in ('.', '..') or not repo:
        raise InvalidURL('Invalid GitHub repository URL.')

    return f"https://github.com/{owner}/{repo}.git"


def parse_repo_url(url: str) -> Dict[str, str]:
    """Return ``{'owner': ..., 'repo': ...}`` for a valid GitHub URL."""
    sanitized = sanitize_repo_url(url)
    match = _HTTPS_URL_RE.match(sanitized)
    return {
        'owner': match.group('owner'),
        'repo': match.group('repo'),
    }


def build_clone_url(url: str, token: Optional[str] = None) -> str:
    """Sanitize ``url`` and embed ``token`` as HTTPS credentials when given."""
    sanitized = sanitize_repo_url(url)
    if not token:
        return sanitized
    return sanitized.replace('https://', f"https://{quote(token, safe='')}@", 1)


def redact_url(text: str) -> str:
    """Strip credentials from URLs inside ``text`` before it is logged or shown."""
    return re.sub(r'(https?://)[^/@\s]+@', r'\1***@', text or '')


def validate_ref(ref: str) -> str:
    """
    Reject refs that git could read as options or that are not plain names.

    Raises:
        InvalidInput: for empty, option-like or malformed refs
    """
    if not ref or not isinstance(ref, str):
        raise InvalidInput('Branch or tag is required.')
    ref = ref.strip()
    if ref.startswith('-') or '..' in ref or not _REF_RE.match(ref) or ref.endswith('.lock'):
        raise InvalidInput(f"Invalid branch or tag name: {ref}")
    return ref


class GitRunner:
    """Executes git commands against working trees under the plugins root."""

    def __init__(self, plugins_dir: PathLike, git_binary: str = 'git', timeout: int = 300):
        """
        Args:
            plugins_dir: Root directory every working tree must live in
            git_binary: Name or path of the git executable
            timeout: Per-command timeout in seconds
        """
        self.plugins_dir = Path(plugins_dir)
        self.git_binary = git_binary
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self.last_error = ''
        self.last_output: List[str] = []
        self._git_version: Optional[str] = None

    # ------------------------------------------------------------------
    # Requirements
    # ------------------------------------------------------------------

    def is_exec_available(self) -> bool:
        """True when the git executable can be resolved and executed by this process."""
        resolved = shutil.which(self.git_binary)
        return bool(resolved) and os.access(resolved, os.X_OK)

    def is_git_installed(self) -> bool:
        if self._git_version is not None:
            return True
        if not self.is_exec_available():
            return False
        try:
            result = subprocess.run(
                [self.git_binary, '--version'],
                capture_output=True,
                text=True,
                timeout=10,
                check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.error(f"Could not run {self.git_binary} --version: {e}")
            return False
        if result.returncode != 0:
            return False
        self._git_version = result.stdout.strip()
        return True

    def check_requirements(self) -> Dict[str, Any]:
        """Report whether git can be used, for display and for gating mutations."""
        exec_available = self.is_exec_available()
        git_installed = exec_available and self.is_git_installed()
        return {
            'exec_available': exec_available,
            'git_installed': git_installed,
            'git_version': self._git_version or '',
            'ready': exec_available and git_installed,
        }

    def require_tool(self) -> None:
        """
        Raises:
            ToolUnavailable: if git cannot be executed
        """
        if not self.is_exec_available():
            self.last_error = f"The git executable '{self.git_binary}' is not available to this process."
            raise ToolUnavailable(self.last_error)
        if not self.is_git_installed():
            self.last_error = 'Git is not installed on this server.'
            raise ToolUnavailable(self.last_error)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def validate_path(self, path: PathLike) -> Path:
        """
        Canonicalize ``path`` and ensure it is an existing directory strictly
        inside the plugins root. Symlinks are resolved before the check.

        Raises:
            InvalidPath: on traversal, symlink escape or missing directory
        """
        try:
            root = self.plugins_dir.resolve(strict=True)
            resolved = Path(path).resolve(strict=True)
        except (OSError, RuntimeError):
            self.last_error = 'Invalid path.'
            raise InvalidPath(self.last_error)

        if resolved == root or root not in resolved.parents:
            self.last_error = 'Path is outside the plugins directory.'
            raise InvalidPath(self.last_error)

        if not resolved.is_dir():
            self.last_error = 'Directory does not exist.'
            raise InvalidPath(self.last_error)

        return resolved

    def _execute(self, args: List[str], cwd: Optional[Path] = None,
                 timeout: Optional[int] = None) -> List[str]:
        """
        Run ``git <args>`` and return stdout lines.

        Raises:
            ToolUnavailable: git missing
            InvalidInput: subcommand not allow-listed
            CommandFailed: non-zero exit or timeout (combined output attached)
        """
        self.require_tool()

        if not args or args[0] not in ALLOWED_SUBCOMMANDS:
            raise InvalidInput(f"Git subcommand not allowed: {args[0] if args else ''}")

        cmd = [self.git_binary] + NON_INTERACTIVE_CONFIG + list(args)
        env = os.environ.copy()
        env['GIT_TERMINAL_PROMPT'] = '0'
        env['GIT_ASKPASS'] = ''
        env['SSH_ASKPASS'] = ''

        display_cmd = redact_url(' '.join(['git'] + list(args)))
        self.logger.debug(f"Running: {display_cmd}" + (f" (in {cwd})" if cwd else ""))

        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            self.last_output = []
            self.last_error = f"Git command timed out: {display_cmd}"
            self.logger.warning(self.last_error)
            raise CommandFailed(self.last_error, command=args, output='')
        except FileNotFoundError:
            self._git_version = None
            self.last_error = 'Git is not installed on this server.'
            raise ToolUnavailable(self.last_error)
        except OSError as e:
            self.last_output = []
            self.last_error = f"Could not run git: {e}"
            self.logger.warning(f"{self.last_error} ({display_cmd})")
            raise CommandFailed(self.last_error, command=args, output='')

        stdout_lines = result.stdout.splitlines()
        combined = '\n'.join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        self.last_output = combined.splitlines()

        if result.returncode != 0:
            self.last_error = redact_url(combined) or f"Git exited with code {result.returncode}"
            self.logger.debug(f"Command failed ({result.returncode}): {display_cmd}: {self.last_error}")
            raise CommandFailed(self.last_error, command=args, output=self.last_error,
                                returncode=result.returncode)

        self.last_error = ''
        return stdout_lines

    def _run_in(self, path: PathLike, args: List[str], timeout: Optional[int] = None) -> List[str]:
        return self._execute(args, cwd=self.validate_path(path), timeout=timeout)

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def clone(self, url: str, dest_slug: str, branch: Optional[str] = None,
              token: Optional[str] = None) -> Path:
        """
        Clone ``url`` into ``<plugins_dir>/<dest_slug>``.

        Args:
            url: GitHub repository URL (validated through sanitize_repo_url)
            dest_slug: Directory name under the plugins root
            branch: Optional branch or tag to check out
            token: Optional access token embedded in the clone URL

        Returns:
            Path of the new working tree

        Raises:
            InvalidURL, InvalidPath, DirectoryExists, CommandFailed, ToolUnavailable
        """
        clone_url = build_clone_url(url, token)

        name = os.path.basename(str(dest_slug).strip().rstrip('/'))
        if not name or name in ('.', '..'):
            self.last_error = 'Invalid destination directory.'
            raise InvalidPath(self.last_error)

        try:
            root = self.plugins_dir.resolve(strict=True)
        except OSError:
            self.last_error = 'Plugins directory does not exist.'
            raise InvalidPath(self.last_error)

        destination = root / name
        if destination.exists() or destination.is_symlink():
            self.last_error = 'Destination directory already exists.'
            raise DirectoryExists(self.last_error)

        args = ['clone']
        if branch:
            args += ['--branch', validate_ref(branch)]
        args += ['--', clone_url, str(destination)]

        self.logger.info(f"Cloning {redact_url(clone_url)} into {destination}")
        try:
            self._execute(args, cwd=root)
        except CommandFailed:
            # git leaves a partial directory behind on some failures
            if destination.exists():
                shutil.rmtree(destination, ignore_errors=True)
            raise
        return destination

    def fetch(self, path: PathLike, all_remotes: bool = False, tags: bool = False) -> List[str]:
        args = ['fetch']
        if all_remotes:
            args.append('--all')
        if tags:
            args.append('--tags')
        return self._run_in(path, args)

    def pull(self, path: PathLike) -> List[str]:
        return self._run_in(path, ['pull'])

    def checkout(self, path: PathLike, ref: str) -> List[str]:
        """
        Raises:
            CheckoutFailed: if git refuses the checkout
        """
        ref = validate_ref(ref)
        try:
            return self._run_in(path, ['checkout', ref])
        except CommandFailed as e:
            raise CheckoutFailed(e.message, command=e.command, output=e.output, returncode=e.returncode)

    def reset(self, path: PathLike, ref: str = 'HEAD', hard: bool = False) -> List[str]:
        args = ['reset']
        if hard:
            args.append('--hard')
        args.append(validate_ref(ref))
        return self._run_in(path, args)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_branch(self, path: PathLike) -> str:
        """Branch name, or ``HEAD`` when detached (e.g. on a tag)."""
        lines = self._run_in(path, ['rev-parse', '--abbrev-ref', 'HEAD'])
        return lines[0].strip() if lines else ''

    def get_current_commit(self, path: PathLike, short: bool = False) -> str:
        args = ['rev-parse']
        if short:
            args.append('--short')
        args.append('HEAD')
        lines = self._run_in(path, args)
        return lines[0].strip() if lines else ''

    def get_commit_info(self, path: PathLike, ref: str = 'HEAD') -> Optional[Dict[str, Any]]:
        lines = self._run_in(path, ['log', '-1', f'--format={COMMIT_LOG_FORMAT}', validate_ref(ref), '--'])
        if len(lines) < 6:
            return None
        try:
            timestamp = int(lines[4])
        except ValueError:
            timestamp = 0
        return {
            'hash': lines[0],
            'short_hash': lines[1],
            'author': lines[2],
            'email': lines[3],
            'timestamp': timestamp,
            'message': lines[5],
        }

    def get_status(self, path: PathLike) -> Dict[str, Any]:
        lines = [line for line in self._run_in(path, ['status', '--porcelain']) if line.strip()]
        return {
            'clean': not lines,
            'changes': lines,
        }

    def get_branches(self, path: PathLike, remote: bool = False) -> List[str]:
        args = ['branch']
        if remote:
            args.append('-r')
        branches = []
        for line in self._run_in(path, args):
            name = line.strip().lstrip('*').strip()
            if name and 'HEAD' not in name:
                branches.append(name)
        return branches

    def get_tags(self, path: PathLike) -> List[str]:
        return [line.strip() for line in self._run_in(path, ['tag', '-l']) if line.strip()]

    def get_remote_url(self, path: PathLike, remote: str = 'origin') -> str:
        lines = self._run_in(path, ['remote', 'get-url', validate_ref(remote)])
        return lines[0].strip() if lines else ''

    def get_remote_diff(self, path: PathLike, branch: Optional[str] = None) -> Dict[str, int]:
        """
        Count commits the working tree is behind/ahead of ``origin/<branch>``.

        Fetches first. A failed count (e.g. tracking a tag) reports 0/0.
        """
        self.fetch(path)
        branch = validate_ref(branch or self.get_current_branch(path))
        try:
            lines = self._run_in(path, ['rev-list', '--left-right', '--count', f'origin/{branch}...{branch}'])
        except CommandFailed as e:
            self.logger.debug(f"Could not count divergence for {branch}: {e}")
            return {'ahead': 0, 'behind': 0}

        counts = lines[0].split() if lines else []
        try:
            behind = int(counts[0]) if len(counts) > 0 else 0
            ahead = int(counts[1]) if len(counts) > 1 else 0
        except ValueError:
            behind, ahead = 0, 0
        return {'ahead': ahead, 'behind': behind}

    def get_remote_commit(self, path: PathLike, branch: Optional[str] = None) -> str:
        """Full hash of ``origin/<branch>`` after a fetch."""
        self.fetch(path)
        branch = validate_ref(branch or self.get_current_branch(path))
        lines = self._run_in(path, ['rev-parse', f'origin/{branch}'])
        return lines[0].strip() if lines else ''

    def is_repo(self, path: PathLike) -> bool:
        """True when ``path`` is the top level of a git working tree."""
        try:
            resolved = self.validate_path(path)
            lines = self._execute(['rev-parse', '--show-toplevel'], cwd=resolved)
        except (CommandFailed, InvalidPath):
            return False
        if not lines:
            return False
        return Path(lines[0].strip()).resolve() == resolved
