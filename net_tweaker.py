#!/usr/bin/env python3
"""
Net Tweaker - Idempotent Network Configuration Patcher
======================================================

A CLI tool that adds and removes markered network tuning blocks in Linux
system configuration files and reloads them on the running host.

Version: 1.0.0
License: MIT
Python: 3.7+

Features:
- Sentinel-based install/remove of sysctl tuning blocks (safe to re-run)
- Ordered resolvconf DNS configuration with post-reload verification
- Timestamped backups and atomic rewrites of every touched file
- Exclusive file locking across detect, write and reload
- YAML configuration with environment and command-line overrides
"""

import argparse
import fcntl
import importlib
import logging
import os
import pkgutil
import shutil
import subprocess
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import yaml

# Tool version
VERSION = "1.0.0"

LOGGER_NAME = 'net_tweaker'

logger = logging.getLogger(LOGGER_NAME)


# Color codes for terminal output
class Colors:
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    WHITE = '\033[97m'
    BOLD = '\033[1m'
    RESET = '\033[0m'

    BRIGHT_RED = '\033[1;31m'
    BRIGHT_GREEN = '\033[1;32m'
    BRIGHT_YELLOW = '\033[1;33m'
    BRIGHT_CYAN = '\033[1;36m'

    # Banner background
    BG_BLUE = '\033[44m'


class Severity(Enum):
    """Severity levels for operator-facing messages"""
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"
    SUCCESS = "SUCCESS"


class ColorManager:
    """Manages color output based on terminal capabilities and user preferences"""

    def __init__(self):
        self.colors_enabled = self._should_use_colors()

    def _should_use_colors(self) -> bool:
        """Determine if colors should be used based on terminal and environment"""
        # Check NO_COLOR environment variable (per no-color.org)
        if os.environ.get('NO_COLOR'):
            return False

        if not sys.stdout.isatty():
            return False

        term = os.environ.get('TERM', '')
        if term in ['dumb', 'unknown']:
            return False

        return True

    def set_colors_enabled(self, enabled: bool):
        """Override color settings (for --no-color flag)"""
        self.colors_enabled = enabled

    def colorize(self, text: str, severity: Severity) -> str:
        """Apply color coding based on severity"""
        if not self.colors_enabled:
            return text

        color_map = {
            Severity.CRITICAL: f"{Colors.BRIGHT_RED}{Colors.BOLD}",
            Severity.WARNING: f"{Colors.BRIGHT_YELLOW}{Colors.BOLD}",
            Severity.INFO: f"{Colors.BRIGHT_CYAN}",
            Severity.SUCCESS: f"{Colors.BRIGHT_GREEN}{Colors.BOLD}"
        }

        color = color_map.get(severity, Colors.WHITE)
        return f"{color}{text}{Colors.RESET}"

    def color(self, color_code: str, text: str) -> str:
        """Apply specific color if colors are enabled"""
        if not self.colors_enabled:
            return text
        return f"{color_code}{text}{Colors.RESET}"


class TweakerError(Exception):
    """Base class for fatal errors; reported to the operator, never repaired"""
    exit_code = 1


class NotRootError(TweakerError):
    """Mutating operation attempted without root privileges"""


class UnsupportedPlatformError(TweakerError):
    """Host OS is not one the tweak targets"""


class ConfigurationError(TweakerError):
    """Invalid configuration file, settings block or override value"""


class BackupError(TweakerError):
    """A pre-mutation backup could not be written"""


class InconsistentMarkerStateError(TweakerError):
    """Sentinel appears more than once; the file needs manual attention"""

    def __init__(self, path: Union[str, Path], sentinel: str, count: int):
        super().__init__(
            f"Sentinel {sentinel!r} appears {count} times in {path}; "
            f"remove the duplicate blocks manually before re-running"
        )
        self.path = str(path)
        self.sentinel = sentinel
        self.count = count


class CommandFailedError(TweakerError):
    """External command returned a non-zero exit code"""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ''):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed with exit code {returncode}: {' '.join(self.command)}"
        if stderr.strip():
            message += f" ({stderr.strip()})"
        super().__init__(message)


class ReloadCommandFailedError(CommandFailedError):
    """The reload action that applies a written file failed"""


class VerificationFailedError(TweakerError):
    """Post-write content or order check did not hold"""


class MarkerState(Enum):
    """Installed state of a sentinel in a target file"""
    ABSENT = "absent"
    PRESENT = "present"
    INCONSISTENT = "inconsistent"


class Outcome(Enum):
    """What an install or uninstall request ended up doing"""
    INSTALLED = "installed"
    UNINSTALLED = "uninstalled"
    ALREADY_INSTALLED = "already installed"
    NOT_INSTALLED = "not installed"
    CANCELLED = "cancelled"


@dataclass
class SettingsBlock:
    """Ordered configuration lines installed together under one sentinel"""
    sentinel: str
    lines: List[str]

    def __post_init__(self):
        self.sentinel = self.sentinel.strip()
        self.lines = [line.rstrip('\n') for line in self.lines]
        if not self.sentinel:
            raise ConfigurationError("Sentinel must not be empty")
        if not self.lines:
            raise ConfigurationError("Settings block must contain at least one line")
        for line in self.lines:
            if not line.strip():
                raise ConfigurationError("Settings block lines must not be blank")
            if '\n' in line:
                raise ConfigurationError(f"Settings block line spans several lines: {line!r}")
            if line.strip() == self.sentinel:
                raise ConfigurationError("Settings block lines must not repeat the sentinel")

    def rendered(self) -> List[str]:
        """Lines appended on install: blank separator, sentinel, then the block"""
        return ['', self.sentinel] + list(self.lines)


@dataclass
class TargetFile:
    """Handle on a line-oriented text file the patcher mutates"""
    path: Path
    backup_dir: Optional[Path] = None
    encoding: str = 'utf-8'

    def __post_init__(self):
        self.path = Path(self.path)
        if self.backup_dir is not None:
            self.backup_dir = Path(self.backup_dir)

    @property
    def lock_path(self) -> Path:
        return self.path.parent / f".{self.path.name}.lock"

    def exists(self) -> bool:
        return self.path.exists()

    def read_lines(self) -> List[str]:
        """Return the file's lines without terminators; a missing file reads as empty"""
        if not self.path.exists():
            return []
        return self.path.read_text(encoding=self.encoding).splitlines()

    def ensure_exists(self):
        """Create the parent directory and an empty file when missing"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)


@dataclass
class PatchResult:
    """Result of an install or uninstall request"""
    outcome: Outcome
    path: str
    backup_path: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.outcome in (Outcome.INSTALLED, Outcome.UNINSTALLED)


@dataclass
class PlatformInfo:
    """Fields of /etc/os-release the platform check cares about"""
    id: str
    version_id: str
    pretty_name: str


def read_os_release(path: Union[str, Path] = '/etc/os-release') -> Optional[PlatformInfo]:
    """Parse an os-release file, returning None when it is missing"""
    fields: Dict[str, str] = {}
    try:
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                key, value = line.split('=', 1)
                fields[key.strip()] = value.strip().strip('"').strip("'")
    except FileNotFoundError:
        return None

    return PlatformInfo(
        id=fields.get('ID', ''),
        version_id=fields.get('VERSION_ID', ''),
        pretty_name=fields.get('PRETTY_NAME', fields.get('NAME', 'unknown'))
    )


def create_timestamped_backup(file_path: Union[str, Path],
                              backup_dir: Optional[Union[str, Path]] = None) -> Optional[str]:
    """Create a timestamped backup of a file.

    Symlinks are copied as links. Without ``backup_dir`` the copy sits next
    to the original as ``<name>.bak.<timestamp>``; with it, the copy goes to
    ``<backup_dir>/<name>.<timestamp>.bak``. Existing backups are never
    overwritten.

    Returns:
        The backup path, or None when the file does not exist.
    """
    path = Path(file_path)
    if not path.exists() and not path.is_symlink():
        logger.debug(f"File {path} does not exist, no backup needed")
        return None

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    if backup_dir is not None:
        candidate = Path(backup_dir) / f"{path.name}.{timestamp}.bak"
    else:
        candidate = path.with_name(f"{path.name}.bak.{timestamp}")

    backup_path = candidate
    counter = 1
    while backup_path.exists() or backup_path.is_symlink():
        backup_path = candidate.with_name(f"{candidate.name}.{counter}")
        counter += 1

    try:
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(str(path), str(backup_path), follow_symlinks=False)
    except OSError as e:
        raise BackupError(f"Failed to create backup of {path}: {e}") from e

    logger.info(f"Created backup: {backup_path}")
    return str(backup_path)


def _fsync_directory(directory: Path):
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def safe_write_file(file_path: Union[str, Path], content: str, encoding: str = 'utf-8'):
    """Replace a file's content atomically.

    Content goes to a temporary file in the same directory, is fsynced, and
    is renamed over the original. A failure before the rename leaves the
    original untouched and removes the temporary file.
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(mode='w', encoding=encoding, dir=str(path.parent),
                                         delete=False, prefix=f".{path.name}.tmp") as tmp_file:
            tmp_path = tmp_file.name
            tmp_file.write(content)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())  # Force write to disk

        if path.exists():
            shutil.copymode(str(path), tmp_path)
        else:
            os.chmod(tmp_path, 0o644)

        # Atomic rename
        os.rename(tmp_path, str(path))
        tmp_path = None
        _fsync_directory(path.parent)
    finally:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)

    logger.debug(f"Successfully wrote {path}")


def replace_symlink(link_path: Union[str, Path], target: Union[str, Path]):
    """Point link_path at target, swapping the link in with a rename"""
    link_path = Path(link_path)
    tmp_link = link_path.with_name(f".{link_path.name}.tmp-link")
    if tmp_link.is_symlink() or tmp_link.exists():
        tmp_link.unlink()
    os.symlink(str(target), str(tmp_link))
    os.rename(str(tmp_link), str(link_path))
    logger.debug(f"Linked {link_path} -> {target}")


@contextmanager
def file_lock(lock_path: Union[str, Path]) -> Iterator[None]:
    """Hold an exclusive advisory lock on lock_path for the duration of the block"""
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, 'a') as lock_file:
        logger.debug(f"Acquiring lock {lock_path}")
        fcntl.flock(lock_file, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            logger.debug(f"Released lock {lock_path}")


class CommandRunner:
    """Executes system commands with timeout and error handling"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def run(self, cmd: Union[str, List[str]],
            timeout: int = 30,
            check: bool = False,
            env: Optional[Dict[str, str]] = None) -> Tuple[int, str, str]:
        """Run a command, returning (exit_code, stdout, stderr); -1 when it could not run"""
        if isinstance(cmd, str):
            cmd = cmd.split()
        cmd = list(cmd)

        run_env = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)

        try:
            self.logger.debug(f"Executing command: {' '.join(cmd)}")

            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=check,
                env=run_env
            )

            self.logger.debug(f"Command exit code: {result.returncode}")
            if result.stdout:
                self.logger.debug(f"Command stdout: {result.stdout[:500]}")
            if result.stderr:
                self.logger.debug(f"Command stderr: {result.stderr[:500]}")

            return result.returncode, result.stdout, result.stderr

        except subprocess.TimeoutExpired:
            self.logger.error(f"Command timed out after {timeout}s: {' '.join(cmd)}")
            return -1, "", f"Command timed out after {timeout}s"
        except subprocess.CalledProcessError as e:
            self.logger.error(f"Command failed: {' '.join(cmd)}, error: {e}")
            return e.returncode, e.stdout or "", e.stderr or ""
        except FileNotFoundError as e:
            self.logger.error(f"Required command not found: {' '.join(cmd)}")
            return -1, "", str(e)
        except OSError as e:
            self.logger.error(f"Unexpected error running command: {e}")
            return -1, "", str(e)


class Reloader:
    """Makes a config file's content take effect on the running system.

    ``apply()`` returns nothing on success and raises a TweakerError
    (normally ReloadCommandFailedError) on failure.
    """
    description = "reload"

    def apply(self) -> None:
        raise NotImplementedError


class CommandReloader(Reloader):
    """Runs one or more commands in order; the first non-zero exit is fatal"""

    def __init__(self, runner: CommandRunner, commands: Sequence[Sequence[str]],
                 description: Optional[str] = None, timeout: int = 120):
        self.runner = runner
        self.commands = [list(cmd) for cmd in commands]
        self.description = description or ', '.join(' '.join(cmd) for cmd in self.commands)
        self.timeout = timeout

    def apply(self) -> None:
        for cmd in self.commands:
            code, _, stderr = self.runner.run(cmd, timeout=self.timeout)
            if code != 0:
                raise ReloadCommandFailedError(cmd, code, stderr)


class CallbackReloader(Reloader):
    """Wraps a plain callable"""

    def __init__(self, callback: Callable[[], None], description: str = "callback"):
        self.callback = callback
        self.description = description

    def apply(self) -> None:
        self.callback()


class ChainReloader(Reloader):
    """Applies several reloaders in order, stopping at the first failure"""

    def __init__(self, reloaders: Sequence[Reloader]):
        self.reloaders = list(reloaders)
        self.description = ' then '.join(r.description for r in self.reloaders)

    def apply(self) -> None:
        for reloader in self.reloaders:
            reloader.apply()


class MarkerPatcher:
    """Installs and removes sentinel-tagged settings blocks in line-oriented files.

    Each file+sentinel pair moves ABSENT --install--> PRESENT --uninstall--> ABSENT.
    INCONSISTENT (sentinel repeated) has no way out and needs the operator.
    Detect, mutation and reload all happen under an exclusive lock on a
    sibling ``.<name>.lock`` file.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def count_sentinels(self, target: TargetFile, sentinel: str) -> int:
        sentinel = sentinel.strip()
        return sum(1 for line in target.read_lines() if line.strip() == sentinel)

    def detect(self, target: TargetFile, sentinel: str) -> MarkerState:
        """Classify the file by how many lines equal the sentinel"""
        count = self.count_sentinels(target, sentinel)
        if count == 0:
            return MarkerState.ABSENT
        if count == 1:
            return MarkerState.PRESENT
        self.logger.debug(f"Sentinel {sentinel!r} found {count} times in {target.path}")
        return MarkerState.INCONSISTENT

    def _require_consistent(self, target: TargetFile, sentinel: str) -> MarkerState:
        state = self.detect(target, sentinel)
        if state is MarkerState.INCONSISTENT:
            raise InconsistentMarkerStateError(target.path, sentinel,
                                               self.count_sentinels(target, sentinel))
        return state

    def install(self, target: TargetFile, block: SettingsBlock,
                reloader: Optional[Reloader], confirmed: bool) -> PatchResult:
        """Append the block under its sentinel and reload, unless already present"""
        with file_lock(target.lock_path):
            state = self._require_consistent(target, block.sentinel)
            if state is MarkerState.PRESENT:
                self.logger.info(f"Block {block.sentinel!r} already installed in {target.path}")
                return PatchResult(Outcome.ALREADY_INSTALLED, str(target.path))

            if not confirmed:
                self.logger.info(f"Installation into {target.path} cancelled")
                return PatchResult(Outcome.CANCELLED, str(target.path))

            backup_path = create_timestamped_backup(target.path, target.backup_dir)
            target.ensure_exists()
            self._append_block(target, block)
            self.logger.info(f"Added {len(block.lines)} lines under {block.sentinel!r} to {target.path}")

            self.apply(reloader)

        return PatchResult(Outcome.INSTALLED, str(target.path), backup_path)

    def _append_block(self, target: TargetFile, block: SettingsBlock):
        existing = target.path.read_bytes()
        prefix = '\n' if existing and not existing.endswith(b'\n') else ''

        with open(target.path, 'a', encoding=target.encoding) as f:
            f.write(prefix + '\n'.join(block.rendered()) + '\n')
            f.flush()
            os.fsync(f.fileno())

    def uninstall(self, target: TargetFile, block: SettingsBlock,
                  reloader: Optional[Reloader], confirmed: bool) -> PatchResult:
        """Filter the block out of the file, swap the result in atomically, then reload"""
        with file_lock(target.lock_path):
            state = self._require_consistent(target, block.sentinel)
            if state is MarkerState.ABSENT:
                self.logger.info(f"Block {block.sentinel!r} not installed in {target.path}")
                return PatchResult(Outcome.NOT_INSTALLED, str(target.path))

            if not confirmed:
                self.logger.info(f"Removal from {target.path} cancelled")
                return PatchResult(Outcome.CANCELLED, str(target.path))

            backup_path = create_timestamped_backup(target.path, target.backup_dir)
            remaining = self.strip_block(target.read_lines(), block)
            safe_write_file(target.path, ''.join(f"{line}\n" for line in remaining), target.encoding)
            self.logger.info(f"Removed block {block.sentinel!r} from {target.path}")

            self.apply(reloader)

        return PatchResult(Outcome.UNINSTALLED, str(target.path), backup_path)

    @staticmethod
    def strip_block(lines: List[str], block: SettingsBlock) -> List[str]:
        """Drop the sentinel, every line equal to a block line, and the blank separator before the sentinel.

        Matching is by text, not position, so a block line edited by hand
        after install is left behind.
        """
        block_lines = {line.strip() for line in block.lines}
        kept: List[str] = []
        for line in lines:
            stripped = line.strip()
            if stripped == block.sentinel:
                if kept and not kept[-1].strip():
                    kept.pop()
                continue
            if stripped in block_lines:
                continue
            kept.append(line)
        return kept

    def apply(self, reloader: Optional[Reloader]):
        """Run the reload action; callers invoke this only after the write is on disk"""
        if reloader is None:
            return
        self.logger.info(f"Applying changes: {reloader.description}")
        reloader.apply()


@dataclass
class TweakContext:
    """Shared handles passed to tweak modules"""
    name: str
    settings: Dict[str, Any]
    logger: logging.Logger
    runner: CommandRunner
    patcher: MarkerPatcher
    color_manager: ColorManager
    confirmed: bool = False

    def run_command(self, cmd: Union[str, List[str]], timeout: int = 30,
                    check: bool = False, env: Optional[Dict[str, str]] = None) -> Tuple[int, str, str]:
        return self.runner.run(cmd, timeout=timeout, check=check, env=env)

    def say(self, message: str, color: Optional[str] = None):
        """Print an operator-facing progress line"""
        if color:
            message = self.color_manager.color(color, message)
        print(message)


class TweakRegistry:
    """Registry for dynamically loaded tweak modules"""

    REQUIRED_HOOKS = ('detect', 'install', 'uninstall', 'status')

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.tweaks: Dict[str, Any] = {}
        self.disabled_tweaks = set()
        self.config: Dict[str, Any] = {'default_answer': 'n', 'tweaks': {}}

    def load_tweaks(self, tweaks_package: str = "tweaks"):
        """Import every public module of the tweaks package that exports the tweak hooks"""
        tweaks_path = Path(__file__).parent / tweaks_package
        if not tweaks_path.exists():
            self.logger.warning(f"Tweaks directory {tweaks_path} not found")
            return

        for module_info in pkgutil.iter_modules([str(tweaks_path)]):
            module_name = module_info.name
            if module_name.startswith('_'):  # Skip private modules
                continue

            try:
                module = importlib.import_module(f"{tweaks_package}.{module_name}")
            except ImportError as e:
                self.logger.error(f"Failed to load tweak module {module_name}: {e}")
                continue

            missing = [hook for hook in self.REQUIRED_HOOKS
                       if not callable(getattr(module, hook, None))]
            if missing:
                self.logger.warning(f"Tweak module {module_name} missing {', '.join(missing)}()")
                continue

            self.tweaks[module_name] = module
            self.logger.debug(f"Loaded tweak module: {module_name}")

    def disable_tweak(self, tweak_name: str):
        """Disable a specific tweak"""
        self.disabled_tweaks.add(tweak_name)
        self.logger.info(f"Disabled tweak: {tweak_name}")

    def enable_tweak(self, tweak_name: str):
        """Enable a previously disabled tweak"""
        self.disabled_tweaks.discard(tweak_name)
        self.logger.info(f"Enabled tweak: {tweak_name}")

    def get_available_tweaks(self) -> List[str]:
        return list(self.tweaks.keys())

    def get_enabled_tweaks(self) -> List[str]:
        return [name for name in self.tweaks.keys() if name not in self.disabled_tweaks]

    def get(self, tweak_name: str):
        if tweak_name not in self.tweaks:
            available = ', '.join(sorted(self.tweaks)) or 'none'
            raise ConfigurationError(f"Unknown tweak {tweak_name!r} (available: {available})")
        if tweak_name in self.disabled_tweaks:
            raise ConfigurationError(f"Tweak {tweak_name!r} is disabled by configuration")
        return self.tweaks[tweak_name]

    def settings_for(self, tweak_name: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Merge settings: module defaults < config file < environment < overrides"""
        module = self.get(tweak_name)
        settings = dict(getattr(module, 'DEFAULTS', {}))
        settings.update(self.config.get('tweaks', {}).get(tweak_name) or {})

        for key, env_var in getattr(module, 'ENV_OVERRIDES', {}).items():
            value = os.environ.get(env_var)
            if value:
                self.logger.debug(f"Setting {tweak_name}.{key} from ${env_var}")
                settings[key] = value

        for key, value in (overrides or {}).items():
            if value is not None:
                settings[key] = value
        return settings

    @staticmethod
    def _parse_answer(value: Any, config_path: str) -> str:
        """Normalize default_answer to 'y' or 'n'; YAML reads bare yes/no as booleans"""
        if isinstance(value, bool):
            return 'y' if value else 'n'
        answer = str(value).strip().lower()
        if answer not in ('y', 'yes', 'n', 'no'):
            raise ConfigurationError(
                f"default_answer in {config_path} must be y or n, got {value!r}")
        return answer[0]

    def load_config(self, config_path: str):
        """Load tweak configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            self.logger.debug(f"No config file found at {config_path}")
            return
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        tweaks = config.get('tweaks') or {}
        if not isinstance(tweaks, dict):
            raise ConfigurationError(f"'tweaks' in {config_path} must be a mapping")

        if 'default_answer' in config:
            self.config['default_answer'] = self._parse_answer(config['default_answer'], config_path)
        self.config['tweaks'] = tweaks

        for tweak in config.get('disabled_tweaks', []) or []:
            self.disable_tweak(tweak)

        self.logger.info(f"Loaded configuration from {config_path}")


class NetTweaker:
    """Main class: prompts, privilege and platform checks around the tweak modules"""

    def __init__(self, verbose: bool = False, no_color: bool = False, assume_yes: bool = False,
                 config_file: Optional[str] = None, skip_tweaks: Optional[List[str]] = None,
                 os_release_path: str = '/etc/os-release'):
        self.verbose = verbose
        self.assume_yes = assume_yes
        self.os_release_path = os_release_path
        self.logger = self._setup_logging()
        self.color_manager = ColorManager()

        if no_color:
            self.color_manager.set_colors_enabled(False)

        self.runner = CommandRunner(self.logger)
        self.patcher = MarkerPatcher(self.logger)

        self.registry = TweakRegistry(self.logger)
        self.registry.load_tweaks()

        if config_file:
            self.registry.load_config(config_file)

        if skip_tweaks:
            for tweak in skip_tweaks:
                self.registry.disable_tweak(tweak)

    def _setup_logging(self) -> logging.Logger:
        """Configure logging"""
        log = logging.getLogger(LOGGER_NAME)
        log.setLevel(logging.DEBUG if self.verbose else logging.INFO)

        if not log.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            log.addHandler(handler)

        return log

    def _is_root(self) -> bool:
        """Check if running as root"""
        return os.geteuid() == 0

    def _require_root(self, operation: str):
        if not self._is_root():
            raise NotRootError(f"{operation} requires root privileges. Please run with sudo.")

    def _check_platform(self, settings: Dict[str, Any], title: str):
        """Match /etc/os-release against the tweak's supported_platforms (empty means any)"""
        supported = settings.get('supported_platforms') or []
        if not supported:
            return

        platform = read_os_release(self.os_release_path)
        if platform is None:
            raise UnsupportedPlatformError(f"Cannot detect OS ({self.os_release_path} missing).")

        for entry in supported:
            if platform.id == str(entry.get('id', '')) and \
                    platform.version_id == str(entry.get('version_id', '')):
                self.logger.debug(f"Platform {platform.pretty_name} supported")
                return

        wanted = ', '.join(f"{entry.get('id')} {entry.get('version_id')}" for entry in supported)
        raise UnsupportedPlatformError(
            f"{title} targets {wanted}. Detected: {platform.pretty_name or 'unknown'}"
        )

    def _confirm(self, question: str) -> bool:
        """Ask a yes/no question; an empty answer takes the configured default"""
        if self.assume_yes:
            return True

        default = self.registry.config.get('default_answer', 'n')
        try:
            answer = input(f"{question} [y/n] ({default}): ").strip().lower()
        except EOFError:
            answer = ''
        return (answer or default) in ('y', 'yes')

    def _print_banner(self, title: str):
        banner = f"{title} {VERSION}".center(40)
        print(self.color_manager.color(f"{Colors.WHITE}{Colors.BG_BLUE}{Colors.BOLD}", banner))

    def build_context(self, tweak_name: str, overrides: Optional[Dict[str, Any]] = None) -> TweakContext:
        return TweakContext(
            name=tweak_name,
            settings=self.registry.settings_for(tweak_name, overrides),
            logger=self.logger,
            runner=self.runner,
            patcher=self.patcher,
            color_manager=self.color_manager
        )

    def run(self, tweak_name: str, action: str = 'install',
            overrides: Optional[Dict[str, Any]] = None) -> Optional[PatchResult]:
        """Run one action ('install', 'uninstall' or 'status') of a tweak"""
        module = self.registry.get(tweak_name)
        title = getattr(module, 'TITLE', tweak_name)
        context = self.build_context(tweak_name, overrides)
        self._print_banner(title)

        if action == 'status':
            module.status(context)
            return None

        self._require_root(f"{title} {action}")
        self._check_platform(context.settings, title)

        state = module.detect(context)
        if state is MarkerState.INCONSISTENT:
            path = context.settings.get('target') or context.settings.get('head_file')
            sentinel = str(context.settings['sentinel']).strip()
            raise InconsistentMarkerStateError(
                path, sentinel, self.patcher.count_sentinels(TargetFile(path), sentinel))

        print()
        if action == 'install':
            if state is MarkerState.PRESENT:
                print(f"{title} settings have already been added to the system!")
                if not self.assume_yes and self._confirm(f"Do you want to remove {title} settings?"):
                    action = 'uninstall'
                    context.confirmed = True
            else:
                for line in getattr(module, 'NOTICE', []):
                    print(line)
                context.confirmed = self._confirm("Proceed with installation?")
        else:
            context.confirmed = self._confirm(f"Do you want to remove {title} settings?")

        if action == 'install':
            result = module.install(context)
        else:
            result = module.uninstall(context)

        self._report(title, result)
        return result

    def _report(self, title: str, result: PatchResult):
        messages = {
            Outcome.INSTALLED: (Severity.SUCCESS, f"✓ {title} settings have been added successfully."),
            Outcome.UNINSTALLED: (Severity.SUCCESS, f"✓ {title} settings were successfully removed."),
            Outcome.ALREADY_INSTALLED: (Severity.INFO, f"{title} settings already present, nothing to do."),
            Outcome.NOT_INSTALLED: (Severity.INFO, f"{title} settings are not installed, nothing to remove."),
            Outcome.CANCELLED: (Severity.WARNING, "Operation was canceled by the user!"),
        }
        severity, message = messages[result.outcome]
        print()
        print(self.color_manager.colorize(message, severity))
        if result.backup_path:
            print(f"Backup of previous contents: {result.backup_path}")
        print()

    def list_tweaks(self):
        """List all available tweaks"""
        available = self.registry.get_available_tweaks()
        enabled = self.registry.get_enabled_tweaks()
        disabled = self.registry.disabled_tweaks

        print(f"{self.color_manager.color(Colors.BOLD, 'Available Tweaks:')}")
        print(f"Total: {len(available)} tweaks")

        if enabled:
            print(f"\n{self.color_manager.color(Colors.BRIGHT_GREEN, 'Enabled Tweaks:')}")
            for name in sorted(enabled):
                description = getattr(self.registry.tweaks[name], 'DESCRIPTION', '')
                print(f"  ✓ {name:<8} {description}")

        if disabled:
            print(f"\n{self.color_manager.color(Colors.BRIGHT_RED, 'Disabled Tweaks:')}")
            for name in sorted(disabled):
                print(f"  ✗ {name}")

        if not available:
            warning_text = self.color_manager.color(Colors.YELLOW, "No tweaks loaded. Check tweaks/ directory.")
            print(f"\n{warning_text}")


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Idempotent network configuration tweaks for Linux hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s tcp                      # Add TCP tuning (offers removal if present)
  %(prog)s tcp --remove             # Remove TCP tuning
  %(prog)s tcp --status             # Compare live sysctl values with the block
  %(prog)s dns                      # Use resolvconf with 1.1.1.1 then 8.8.8.8
  DNS1=9.9.9.9 %(prog)s dns --yes   # Override the primary resolver
  %(prog)s dns --revert             # Go back to systemd-resolved
  %(prog)s --list-tweaks            # List available tweaks
  %(prog)s tcp --config tweaks.yaml # Use custom configuration file
        """
    )

    parser.add_argument(
        'tweak',
        nargs='?',
        help='Tweak to run (see --list-tweaks)'
    )

    action_group = parser.add_mutually_exclusive_group()
    action_group.add_argument(
        '--install',
        dest='action',
        action='store_const',
        const='install',
        help='Install the tweak (default)'
    )
    action_group.add_argument(
        '--remove', '--revert',
        dest='action',
        action='store_const',
        const='uninstall',
        help='Remove the tweak and restore the previous behavior'
    )
    action_group.add_argument(
        '--status',
        dest='action',
        action='store_const',
        const='status',
        help='Show the current state without changing anything'
    )

    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Answer yes to confirmation prompts'
    )

    parser.add_argument(
        '--primary',
        help='Primary DNS server (dns tweak, overrides $DNS1)'
    )

    parser.add_argument(
        '--secondary',
        help='Secondary DNS server (dns tweak, overrides $DNS2)'
    )

    parser.add_argument(
        '--config',
        help='Path to configuration YAML file'
    )

    parser.add_argument(
        '--skip-tweak',
        action='append',
        dest='skip_tweaks',
        help='Disable a tweak (can be used multiple times)'
    )

    parser.add_argument(
        '--list-tweaks',
        action='store_true',
        help='List all available tweaks'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Net Tweaker v{VERSION}'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    parser.add_argument(
        '--no-color',
        action='store_true',
        help='Disable colored output'
    )

    args = parser.parse_args(argv)

    if not args.list_tweaks and not args.tweak:
        parser.error("a tweak name is required (see --list-tweaks)")

    try:
        tweaker = NetTweaker(
            verbose=args.verbose,
            no_color=args.no_color,
            assume_yes=args.yes,
            config_file=args.config,
            skip_tweaks=args.skip_tweaks
        )

        if args.list_tweaks:
            tweaker.list_tweaks()
            return

        overrides = {'primary': args.primary, 'secondary': args.secondary}
        tweaker.run(args.tweak, args.action or 'install', overrides)

    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Operation cancelled by user{Colors.RESET}")
        sys.exit(1)
    except TweakerError as e:
        print(f"\n{Colors.RED}Error: {e}{Colors.RESET}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(e.exit_code)
    except Exception as e:
        print(f"\n{Colors.RED}Error: {e}{Colors.RESET}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
