import os
import re
import json
import queue
import shlex
import bisect
import logging
import threading
import subprocess
import concurrent.futures
from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Optional, Any, Iterable, Iterator

logger = logging.getLogger(__name__)

# --- Configuration -----------------------------------------------------------

class Config:
    """Stores application-wide configuration and constants."""
    GEOMETRY: str = "980x760"
    TITLE: str = "App Freezer"
    CONFIG_DIR: str = os.path.expanduser("~/.config/app_freezer")
    PREFS_FILE: str = os.path.join(CONFIG_DIR, "prefs.json")
    FAVORITES_KEY: str = "favorite_apps"
    ITEMS_PER_PAGE: int = 50
    ICON_SIZE: tuple[int, int] = (20, 20)
    APP_ICON_SIZE: tuple[int, int] = (32, 32)
    MAX_WORKERS: int = 4
    POLL_INTERVAL_MS: int = 50

    # Device shell
    SU_BINARY: str = "su"
    SHELL_BINARY: str = "sh"
    ADB_BINARY: str = "adb"
    PACKAGE_PREFIX: str = "package:"
    STDERR_PREFIX: str = "ERROR: "
    ROOT_MARKER: str = "uid=0"

    # Status banner
    STATUS_DELAY_MS: int = 2000
    ERROR_DELAY_MS: int = 3000

# App states reported by PackageStateReader.get_state_summary
STATE_FROZEN = "frozen"
STATE_RUNNING = "running"
STATE_UNKNOWN = "unknown"

# --- Errors ------------------------------------------------------------------

class FreezerError(Exception):
    """Base class for errors raised by the freezer core."""

class AccessDenied(FreezerError):
    """Root access has not been confirmed for this session."""

class MetadataError(FreezerError):
    """Package metadata could not be resolved."""

class EnumerationError(FreezerError):
    """Neither the root nor the fallback enumeration produced an app list."""

class LaunchError(FreezerError):
    """A package has no launcher entry point or could not be started."""

# --- Data Model --------------------------------------------------------------

@dataclass(frozen=True)
class CommandResult:
    succeeded: bool
    output: str

@dataclass(frozen=True)
class ActionResult:
    succeeded: bool
    message: str

@dataclass
class AppRecord:
    """One user app. Two records are the same app iff their identifiers match."""
    identifier: str
    display_name: str = field(compare=False)
    icon: Optional[Any] = field(default=None, compare=False, repr=False)
    enabled: bool = field(default=True, compare=False)

    def __hash__(self) -> int:
        return hash(self.identifier)

@dataclass(frozen=True)
class PackageMetadata:
    identifier: str
    label: str
    is_system: bool
    enabled: bool = True
    icon: Optional[Any] = None
    version: Optional[str] = None

@dataclass(frozen=True)
class AppDetails:
    identifier: str
    display_name: str
    favorite: bool
    state: str
    version: Optional[str] = None

class Catalog:
    """Apps ordered case-insensitively by display name, unique by identifier.

    The order is kept on every insert, so a catalog is always sorted no
    matter how it was filled. Callers get snapshots, never the backing list.
    """
    def __init__(self, records: Iterable[AppRecord] = ()):
        self._records: list[AppRecord] = []
        self._index: dict[str, AppRecord] = {}
        for record in records:
            self.insert(record)

    @staticmethod
    def _sort_key(record: AppRecord) -> str:
        return record.display_name.lower()

    def insert(self, record: AppRecord):
        existing = self._index.get(record.identifier)
        if existing is not None:
            self._records.remove(existing)
        bisect.insort(self._records, record, key=self._sort_key)
        self._index[record.identifier] = record

    def get(self, identifier: str) -> Optional[AppRecord]:
        return self._index.get(identifier)

    def set_enabled(self, identifier: str, enabled: bool) -> bool:
        record = self._index.get(identifier)
        if record is None:
            return False
        record.enabled = enabled
        return True

    def records(self) -> tuple[AppRecord, ...]:
        return tuple(self._records)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._index

    def __iter__(self) -> Iterator[AppRecord]:
        return iter(self.records())

    def __len__(self) -> int:
        return len(self._records)

# --- Device Shell ------------------------------------------------------------

class ShellChannel:
    """Builds argv lists for commands that run on the device.

    Commands run either directly (the app lives on the rooted device, e.g.
    under Termux) or through ``adb shell``, in which case the device-side
    command line is quoted so the remote shell sees it as one argument.
    """
    def __init__(self, use_adb: bool = False, serial: Optional[str] = None):
        self.use_adb = use_adb
        self.serial = serial

    def _adb_prefix(self) -> list[str]:
        prefix = [Config.ADB_BINARY]
        if self.serial:
            prefix += ["-s", self.serial]
        return prefix + ["shell"]

    def elevated(self, command: str) -> list[str]:
        if self.use_adb:
            return self._adb_prefix() + [f"{Config.SU_BINARY} -c {shlex.quote(command)}"]
        return [Config.SU_BINARY, "-c", command]

    def plain(self, command: str) -> list[str]:
        if self.use_adb:
            return self._adb_prefix() + [command]
        return [Config.SHELL_BINARY, "-c", command]

    def session(self) -> list[str]:
        """argv for an interactive root shell that reads commands from stdin."""
        if self.use_adb:
            return self._adb_prefix() + [Config.SU_BINARY]
        return [Config.SU_BINARY]

    def describe(self) -> str:
        if not self.use_adb:
            return "local su"
        return f"adb ({self.serial})" if self.serial else "adb"


def combine_output(stdout: str, stderr: str) -> str:
    """Joins stdout and tagged stderr lines so stdout can still be substring-matched."""
    lines = [line + "\n" for line in stdout.splitlines()]
    lines += [f"{Config.STDERR_PREFIX}{line}\n" for line in stderr.splitlines()]
    return "".join(lines)


class CommandExecutor:
    """Runs one shell command per call and never raises past its boundary."""
    def __init__(self, channel: ShellChannel, elevated: bool = True):
        self.channel = channel
        self.elevated = elevated

    def run(self, command: str) -> CommandResult:
        argv = self.channel.elevated(command) if self.elevated else self.channel.plain(command)
        logger.debug("Running: %s", " ".join(argv))
        try:
            process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding='utf-8',
                errors='replace' # Prevent encoding errors from crashing
            )
            stdout, stderr = process.communicate()
        except FileNotFoundError:
            msg = f"Command not found - {argv[0]}"
            logger.warning(msg)
            return CommandResult(False, msg)
        except Exception as e:
            msg = f"Execution failed: {e}"
            logger.warning(msg)
            return CommandResult(False, msg)

        if process.returncode != 0:
            logger.debug("'%s' exited with code %s", command, process.returncode)
        return CommandResult(process.returncode == 0, combine_output(stdout or "", stderr or ""))


class AccessProber:
    """Checks that the root shell is actually usable, not merely requested."""
    def __init__(self, channel: ShellChannel):
        self.channel = channel

    def probe(self) -> bool:
        try:
            process = subprocess.Popen(
                self.channel.session(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace'
            )
            stdout, _ = process.communicate("id\nexit\n")
        except Exception as e:
            logger.warning("Root probe failed: %s", e)
            return False

        granted = process.returncode == 0 and Config.ROOT_MARKER in (stdout or "")
        logger.info("Root access %s via %s", "granted" if granted else "denied", self.channel.describe())
        return granted

# --- Package Manager Queries -------------------------------------------------

class PackageStateReader:
    """Read-only `pm` queries parsed into package sets and state summaries.

    Methods never raise; a failed command simply contributes nothing.
    """
    LIST_THIRD_PARTY = "pm list packages -3"
    LIST_DISABLED_THIRD_PARTY = "pm list packages -d -3"
    LIST_DISABLED = "pm list packages -d"
    LIST_ENABLED = "pm list packages -e"

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    @staticmethod
    def parse_packages(output: str) -> set[str]:
        packages = set()
        for line in output.splitlines():
            line = line.rstrip()
            if line.startswith(Config.PACKAGE_PREFIX):
                name = line[len(Config.PACKAGE_PREFIX):]
                if name:
                    packages.add(name)
        return packages

    def list_third_party_packages(self) -> set[str]:
        packages: set[str] = set()
        for command in (self.LIST_THIRD_PARTY, self.LIST_DISABLED_THIRD_PARTY):
            result = self.executor.run(command)
            if result.succeeded:
                packages |= self.parse_packages(result.output)
            else:
                logger.warning("'%s' failed: %s", command, result.output.strip())
        return packages

    def _listed(self, listing: str, identifier: str) -> bool:
        # grep matches substrings, so com.foo also matches com.foo.pro
        result = self.executor.run(f"{listing} | grep {shlex.quote(identifier)}")
        return result.succeeded and identifier in result.output

    def is_frozen(self, identifier: str) -> bool:
        return self._listed(self.LIST_DISABLED, identifier)

    def get_state_summary(self, identifier: str) -> dict[str, str]:
        disabled = self._listed(self.LIST_DISABLED, identifier)
        enabled = self._listed(self.LIST_ENABLED, identifier)
        if disabled:
            state = STATE_FROZEN
        elif enabled:
            state = STATE_RUNNING
        else:
            state = STATE_UNKNOWN
        return {"state": state}


class AppStateMutator:
    """State-changing `pm`/`am` commands, each reported as an ActionResult."""
    FREEZE_MESSAGE = "App frozen"
    UNFREEZE_MESSAGE = "App unfrozen, it is back in the app drawer"

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def freeze(self, identifier: str) -> ActionResult:
        quoted = shlex.quote(identifier)
        # Best effort: packages without a running process fail here harmlessly.
        self.executor.run(f"am force-stop {quoted}")
        result = self.executor.run(f"pm disable-user --user 0 {quoted}")
        if result.succeeded:
            return ActionResult(True, self.FREEZE_MESSAGE)
        return ActionResult(False, result.output)

    def unfreeze(self, identifier: str) -> ActionResult:
        result = self.executor.run(f"pm enable {shlex.quote(identifier)}")
        if result.succeeded:
            return ActionResult(True, self.UNFREEZE_MESSAGE)
        return ActionResult(False, result.output)

    def force_stop(self, identifier: str) -> ActionResult:
        result = self.executor.run(f"am force-stop {shlex.quote(identifier)}")
        return ActionResult(result.succeeded, result.output)


class AppLauncher:
    """Starts an app's launcher activity through `monkey`."""
    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def launch(self, identifier: str) -> ActionResult:
        result = self.executor.run(
            f"monkey -p {shlex.quote(identifier)} -c android.intent.category.LAUNCHER 1"
        )
        if not result.succeeded or "No activities found" in result.output:
            raise LaunchError(f"No launchable activity for {identifier}")
        return ActionResult(True, f"Launched {identifier}")

# --- Package Metadata --------------------------------------------------------

class MetadataProvider(ABC):
    """Non-privileged source of labels, icons and system flags."""

    @abstractmethod
    def resolve(self, identifier: str) -> PackageMetadata:
        """Returns metadata for one package or raises MetadataError."""
        ...

    @abstractmethod
    def installed(self) -> list[PackageMetadata]:
        """Every installed package that could be resolved."""
        ...


class ShellMetadataProvider(MetadataProvider):
    """Reads package metadata from unprivileged `dumpsys package` output."""
    _FLAGS_RE = re.compile(r"^\s*flags=\[([^\]]*)\]", re.MULTILINE)
    _ENABLED_RE = re.compile(r"User 0:.*?\benabled=(\d+)")
    _VERSION_RE = re.compile(r"versionName=(\S+)")

    # PackageManager.COMPONENT_ENABLED_STATE_DEFAULT / _ENABLED
    _ENABLED_STATES = {"0", "1"}

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    @staticmethod
    def label_for(identifier: str) -> str:
        # dumpsys does not expose the application label
        return identifier.split('.')[-1].replace('_', ' ').capitalize() or identifier

    def parse(self, identifier: str, output: str) -> PackageMetadata:
        if f"Package [{identifier}]" not in output:
            raise MetadataError(f"Package not found: {identifier}")
        flags = self._FLAGS_RE.search(output)
        is_system = bool(flags) and "SYSTEM" in flags.group(1).split()
        enabled_match = self._ENABLED_RE.search(output)
        enabled = enabled_match is None or enabled_match.group(1) in self._ENABLED_STATES
        version = self._VERSION_RE.search(output)
        return PackageMetadata(
            identifier=identifier,
            label=self.label_for(identifier),
            is_system=is_system,
            enabled=enabled,
            version=version.group(1) if version else None,
        )

    def resolve(self, identifier: str) -> PackageMetadata:
        result = self.executor.run(f"dumpsys package {shlex.quote(identifier)}")
        if not result.succeeded:
            raise MetadataError(f"dumpsys failed for {identifier}: {result.output.strip()}")
        return self.parse(identifier, result.output)

    def installed(self) -> list[PackageMetadata]:
        result = self.executor.run("pm list packages")
        if not result.succeeded:
            raise MetadataError(f"Could not list installed packages: {result.output.strip()}")
        resolved = []
        for identifier in sorted(PackageStateReader.parse_packages(result.output)):
            try:
                resolved.append(self.resolve(identifier))
            except MetadataError as e:
                logger.debug("Skipping %s: %s", identifier, e)
        return resolved

# --- Catalog Builder ---------------------------------------------------------

class CatalogBuilder:
    """Merges `pm` listings with package metadata into a Catalog."""
    def __init__(self, reader: PackageStateReader, metadata: MetadataProvider):
        self.reader = reader
        self.metadata = metadata

    def build(self, has_privilege: bool) -> Catalog:
        if has_privilege:
            try:
                return self._build_with_root()
            except Exception as e:
                logger.warning("Root enumeration failed, falling back: %s", e)
        try:
            return self._build_without_root()
        except Exception as e:
            raise EnumerationError(f"Failed to load app list: {e}") from e

    def _build_with_root(self) -> Catalog:
        catalog = Catalog()
        skipped = 0
        for identifier in sorted(self.reader.list_third_party_packages()):
            try:
                meta = self.metadata.resolve(identifier)
            except FreezerError as e:
                logger.debug("Skipping %s: %s", identifier, e)
                skipped += 1
                continue
            if meta.is_system:
                continue
            enabled = not self.reader.is_frozen(identifier)
            catalog.insert(AppRecord(identifier, meta.label, meta.icon, enabled))
        if skipped:
            logger.info("Skipped %d packages without resolvable metadata", skipped)
        logger.info("Loaded %d apps with root", len(catalog))
        return catalog

    def _build_without_root(self) -> Catalog:
        # Only sees what the package manager reports to an unprivileged caller.
        catalog = Catalog(
            AppRecord(meta.identifier, meta.label, meta.icon, meta.enabled)
            for meta in self.metadata.installed()
            if not meta.is_system
        )
        logger.info("Loaded %d apps without root", len(catalog))
        return catalog

# --- Favorites ---------------------------------------------------------------

class Preferences:
    """A small durable key-value store kept in a JSON file."""
    def __init__(self, path: str = Config.PREFS_FILE):
        self.path = path
        self._values: dict[str, str] = self._read()

    def _read(self) -> dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable preferences %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def get_string(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def put_string(self, key: str, value: str):
        """Writes through to disk before returning; raises OSError on failure."""
        values = dict(self._values)
        values[key] = value
        directory = os.path.dirname(self.path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory)
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(values, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError):
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self._values = values


class FavoritesStore:
    def __init__(self, prefs: Preferences, key: str = Config.FAVORITES_KEY):
        self.prefs = prefs
        self.key = key

    def load(self) -> set[str]:
        raw = self.prefs.get_string(self.key) or ""
        return {identifier for identifier in raw.split(",") if identifier}

    def save(self, favorites: Iterable[str]):
        self.prefs.put_string(self.key, ",".join(sorted(favorites)))

# --- Filtering ---------------------------------------------------------------

class FilterState(Enum):
    ALL = "All"
    FAVORITES = "Favorites"

@dataclass(frozen=True)
class Counts:
    total: int
    enabled: int
    disabled: int
    favorited: int
    visible: int

def apply_filter(catalog: Catalog, favorites: set[str], state: FilterState) -> list[AppRecord]:
    if state == FilterState.FAVORITES:
        return [record for record in catalog if record.identifier in favorites]
    return list(catalog)

def summarize(catalog: Catalog, favorites: set[str], visible: list[AppRecord]) -> Counts:
    total = len(catalog)
    enabled = sum(1 for record in catalog if record.enabled)
    return Counts(
        total=total,
        enabled=enabled,
        disabled=total - enabled,
        favorited=len(favorites),
        visible=len(visible),
    )

# --- Background Work ---------------------------------------------------------

class TaskRunner:
    """Runs blocking calls on a bounded worker pool.

    Results are not delivered from the worker threads. Each finished task
    queues its callback (or errback) and the control thread runs them by
    calling ``drain()``, so callbacks may touch UI state freely.
    """
    def __init__(self, max_workers: int = Config.MAX_WORKERS):
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="freezer")
        self._results: queue.Queue = queue.Queue()
        self._futures: set[concurrent.futures.Future] = set()
        self._lock = threading.Lock()

    def submit(self, func: Callable, *args, callback: Optional[Callable] = None, errback: Optional[Callable] = None) -> concurrent.futures.Future:
        future = self._pool.submit(self._call, func, args, callback, errback)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: concurrent.futures.Future):
        with self._lock:
            self._futures.discard(future)

    def _call(self, func: Callable, args: tuple, callback: Optional[Callable], errback: Optional[Callable]):
        try:
            value = func(*args)
        except Exception as e:
            if errback is not None:
                self._results.put((errback, e))
            else:
                logger.exception("Background task %s failed", getattr(func, '__name__', func))
            raise
        if callback is not None:
            self._results.put((callback, value))
        return value

    def drain(self) -> int:
        """Runs every queued callback on the calling thread; returns how many ran."""
        handled = 0
        while True:
            try:
                handler, value = self._results.get_nowait()
            except queue.Empty:
                return handled
            try:
                handler(value)
            except Exception:
                logger.exception("Result handler %s failed", getattr(handler, '__name__', handler))
            handled += 1

    def wait(self, timeout: Optional[float] = None):
        """Blocks until every submitted task has finished and queued its callback."""
        with self._lock:
            pending = list(self._futures)
        concurrent.futures.wait(pending, timeout=timeout)

    def shutdown(self, wait: bool = True):
        self._pool.shutdown(wait=wait)

# --- Session & Controller ----------------------------------------------------

class Severity(Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"

@dataclass
class Session:
    """Per-run state, only ever touched on the control thread."""
    has_privilege: bool = False
    catalog: Catalog = field(default_factory=Catalog)
    favorites: set[str] = field(default_factory=set)
    filter_state: FilterState = FilterState.ALL

    def require_privilege(self, action: str):
        if not self.has_privilege:
            raise AccessDenied(f"Root access is required to {action}")


def _noop(*args):
    pass


class FreezerController:
    """Turns user actions into background work and reports back as status.

    Every public method, and every callback it registers, runs on the
    control thread. Hooks:

    * ``on_changed()`` -- catalog, favorites, filter or pending rows changed
    * ``on_status(message, severity)`` -- transient feedback
    * ``on_access_denied()`` -- offer the user a retry
    * ``on_details(AppDetails)`` -- result of ``request_details``
    """
    def __init__(self, prober: AccessProber, builder: CatalogBuilder, reader: PackageStateReader,
                 mutator: AppStateMutator, launcher: AppLauncher, metadata: MetadataProvider,
                 favorites_store: FavoritesStore, runner: TaskRunner,
                 on_changed: Callable = _noop, on_status: Callable = _noop,
                 on_access_denied: Callable = _noop, on_details: Callable = _noop):
        self.prober = prober
        self.builder = builder
        self.reader = reader
        self.mutator = mutator
        self.launcher = launcher
        self.metadata = metadata
        self.favorites_store = favorites_store
        self.runner = runner
        self.on_changed = on_changed
        self.on_status = on_status
        self.on_access_denied = on_access_denied
        self.on_details = on_details

        self.session = Session(favorites=favorites_store.load())
        self.loading = False
        self._pending: set[str] = set()
        self._generation = 0

    @classmethod
    def create(cls, channel: ShellChannel, prefs: Preferences, runner: TaskRunner, **hooks) -> 'FreezerController':
        root = CommandExecutor(channel, elevated=True)
        shell = CommandExecutor(channel, elevated=False)
        reader = PackageStateReader(root)
        metadata = ShellMetadataProvider(shell)
        return cls(
            prober=AccessProber(channel),
            builder=CatalogBuilder(reader, metadata),
            reader=reader,
            mutator=AppStateMutator(root),
            launcher=AppLauncher(shell),
            metadata=metadata,
            favorites_store=FavoritesStore(prefs),
            runner=runner,
            **hooks
        )

    # --- Views ---

    def visible(self) -> list[AppRecord]:
        return apply_filter(self.session.catalog, self.session.favorites, self.session.filter_state)

    def counts(self) -> Counts:
        return summarize(self.session.catalog, self.session.favorites, self.visible())

    def summary_text(self) -> str:
        c = self.counts()
        label = "favorite apps" if self.session.filter_state == FilterState.FAVORITES else "apps"
        return f"Showing {c.visible} {label} (total: {c.enabled} enabled / {c.disabled} frozen / {c.favorited} favorites)"

    def is_favorite(self, identifier: str) -> bool:
        return identifier in self.session.favorites

    def is_pending(self, identifier: str) -> bool:
        return identifier in self._pending

    def _status(self, message: str, severity: Severity = Severity.SUCCESS):
        log = logger.error if severity == Severity.ERROR else logger.info
        log(message)
        self.on_status(message, severity)

    def _name(self, identifier: str) -> str:
        record = self.session.catalog.get(identifier)
        return record.display_name if record else identifier

    # --- Access & loading ---

    def start(self):
        self.check_access(reload=True)

    def check_access(self, reload: bool = False):
        self.runner.submit(self.prober.probe, callback=partial(self._on_probed, reload))

    def retry_access(self):
        self.check_access(reload=False)

    def _on_probed(self, reload: bool, granted: bool):
        changed = granted != self.session.has_privilege
        self.session.has_privilege = granted
        if granted:
            self._status("Root access granted")
        else:
            self._status("Root access denied! Grant this app root in your root manager", Severity.ERROR)
            self.on_access_denied()
        if reload or (granted and changed):
            self.reload()

    def reload(self):
        self._generation += 1
        self.loading = True
        self.on_changed()
        self.runner.submit(
            self.builder.build, self.session.has_privilege,
            callback=partial(self._on_catalog_loaded, self._generation),
            errback=partial(self._on_catalog_failed, self._generation)
        )

    def _on_catalog_loaded(self, generation: int, catalog: Catalog):
        # Only the most recently requested build may replace the catalog.
        if generation != self._generation:
            logger.debug("Dropping stale catalog build %d", generation)
            return
        self.loading = False
        self.session.catalog = catalog
        self.on_changed()

    def _on_catalog_failed(self, generation: int, error: Exception):
        if generation != self._generation:
            logger.debug("Ignoring failure of stale catalog build %d: %s", generation, error)
            return
        self.loading = False
        self.on_changed()
        self._status(str(error) if isinstance(error, EnumerationError) else f"Failed to load app list: {error}", Severity.ERROR)

    # --- Filter & favorites ---

    def set_filter(self, state: FilterState):
        self.session.filter_state = state
        self.on_changed()

    def toggle_favorite(self, identifier: str):
        favorites = set(self.session.favorites)
        if identifier in favorites:
            favorites.discard(identifier)
            message = f"{self._name(identifier)} removed from favorites"
        else:
            favorites.add(identifier)
            message = f"{self._name(identifier)} added to favorites"
        try:
            self.favorites_store.save(favorites)
        except OSError as e:
            self._status(f"Could not save favorites: {e}", Severity.ERROR)
            return
        self.session.favorites = favorites
        self.on_changed()
        self._status(message)

    # --- Freeze / unfreeze ---

    def request_toggle(self, identifier: str, desired_enabled: bool) -> bool:
        record = self.session.catalog.get(identifier)
        if record is None:
            logger.warning("Toggle requested for unknown package %s", identifier)
            self.on_changed()
            return False
        try:
            self.session.require_privilege("freeze or unfreeze apps")
        except AccessDenied as e:
            self._status(str(e), Severity.ERROR)
            self.on_changed()
            return False
        if identifier in self._pending:
            self._status(f"{record.display_name} is still being updated", Severity.WARNING)
            return False

        self._pending.add(identifier)
        self.on_changed()
        action = self.mutator.unfreeze if desired_enabled else self.mutator.freeze
        self.runner.submit(
            action, identifier,
            callback=partial(self._on_toggled, identifier, desired_enabled),
            errback=partial(self._on_toggle_error, identifier)
        )
        return True

    def _on_toggled(self, identifier: str, desired_enabled: bool, result: ActionResult):
        self._pending.discard(identifier)
        if result.succeeded:
            self.session.catalog.set_enabled(identifier, desired_enabled)
            self.on_changed()
            self._status(f"{self._name(identifier)} {'unfrozen' if desired_enabled else 'frozen'}")
        else:
            # Re-render so the row's switch snaps back to the real state.
            self.on_changed()
            self._status(f"Operation failed: {result.message.strip()}", Severity.ERROR)

    def _on_toggle_error(self, identifier: str, error: Exception):
        self._pending.discard(identifier)
        self.on_changed()
        self._status(f"Operation failed: {error}", Severity.ERROR)

    def request_force_stop(self, identifier: str):
        try:
            self.session.require_privilege("force stop apps")
        except AccessDenied as e:
            self._status(str(e), Severity.ERROR)
            return
        self.runner.submit(
            self.mutator.force_stop, identifier,
            callback=partial(self._on_force_stopped, identifier),
            errback=partial(self._on_action_error, "Force stop failed")
        )

    def _on_force_stopped(self, identifier: str, result: ActionResult):
        if result.succeeded:
            self._status(f"{self._name(identifier)} force stopped")
        else:
            self._status(f"Force stop failed: {result.message.strip()}", Severity.ERROR)

    def _on_action_error(self, prefix: str, error: Exception):
        self._status(f"{prefix}: {error}", Severity.ERROR)

    # --- Launch & details ---

    def request_launch(self, identifier: str):
        record = self.session.catalog.get(identifier)
        if record is None:
            return
        if not record.enabled:
            self._status(f"Unfreeze {record.display_name} before launching it", Severity.WARNING)
            return
        self.runner.submit(
            self.launcher.launch, identifier,
            callback=lambda result: self._status(f"Launching {record.display_name}"),
            errback=partial(self._on_launch_error, record.display_name)
        )

    def _on_launch_error(self, name: str, error: Exception):
        if isinstance(error, LaunchError):
            self._status(f"{name} cannot be launched", Severity.WARNING)
        else:
            self._status(f"Launch failed: {error}", Severity.WARNING)

    def request_details(self, identifier: str):
        try:
            self.session.require_privilege("view the detailed state")
        except AccessDenied as e:
            self._status(str(e), Severity.ERROR)
            return
        self.runner.submit(
            self._collect_details, identifier, self._name(identifier), self.is_favorite(identifier),
            callback=self.on_details,
            errback=partial(self._on_action_error, "Could not load details")
        )

    def _collect_details(self, identifier: str, name: str, favorite: bool) -> AppDetails:
        # Runs on a worker; takes plain values so it never reads the session.
        state = self.reader.get_state_summary(identifier)["state"]
        try:
            version = self.metadata.resolve(identifier).version
        except FreezerError as e:
            logger.debug("No metadata for %s: %s", identifier, e)
            version = None
        return AppDetails(identifier, name, favorite, state, version)
