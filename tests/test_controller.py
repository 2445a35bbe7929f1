import threading
import time

import pytest

from appfreezer import (
    AppDetails, AppLauncher, AppStateMutator, CatalogBuilder, CommandResult, FavoritesStore,
    FilterState, FreezerController, PackageStateReader, Preferences, Severity, STATE_FROZEN,
)

from conftest import FakeExecutor, FakeMetadata, listing, meta, settle

OK = CommandResult(True, "")


class FakeProber:
    def __init__(self, granted):
        self.granted = granted
        self.calls = 0

    def probe(self):
        self.calls += 1
        return self.granted


class Harness:
    """A controller wired to fakes, recording everything it reports."""

    def __init__(self, runner, tmp_path, granted=True, root=None, shell=None, metadata=None):
        self.root = root or FakeExecutor({
            "pm list packages -d | grep com.b.app": CommandResult(True, listing("com.b.app")),
            "pm list packages -d -3": CommandResult(True, listing("com.b.app")),
            "pm list packages -3": CommandResult(True, listing("com.a.app", "com.b.app")),
        }, default=CommandResult(False, ""))
        self.shell = shell or FakeExecutor(default=CommandResult(True, "Events injected: 1\n"))
        self.metadata = metadata or FakeMetadata([
            meta("com.a.app", "A app", version="1.0"),
            meta("com.b.app", "B app", enabled=True),
        ])
        self.prober = FakeProber(granted)
        self.statuses = []
        self.details = []
        self.denied = 0
        self.changes = 0
        reader = PackageStateReader(self.root)
        self.controller = FreezerController(
            prober=self.prober,
            builder=CatalogBuilder(reader, self.metadata),
            reader=reader,
            mutator=AppStateMutator(self.root),
            launcher=AppLauncher(self.shell),
            metadata=self.metadata,
            favorites_store=FavoritesStore(Preferences(str(tmp_path / "prefs.json"))),
            runner=runner,
            on_changed=self._changed,
            on_status=lambda message, severity: self.statuses.append((message, severity)),
            on_access_denied=self._denied,
            on_details=self.details.append,
        )
        self.runner = runner

    def _changed(self):
        self.changes += 1

    def _denied(self):
        self.denied += 1

    def start(self):
        self.controller.start()
        settle(self.runner)
        return self.controller

    @property
    def last_status(self):
        return self.statuses[-1]


def enabled_flags(controller):
    return {record.identifier: record.enabled for record in controller.session.catalog}


class GatedMetadata(FakeMetadata):
    """Holds the unprivileged enumeration until the test releases it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def installed(self):
        self.entered.set()
        assert self.release.wait(timeout=5)
        return super().installed()


def drain_until(runner, condition, timeout=5):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not reached"
        runner.drain()
        time.sleep(0.01)


class TestStartup:
    def test_root_granted_builds_with_root(self, runner, tmp_path):
        harness = Harness(runner, tmp_path, granted=True)
        controller = harness.start()
        assert controller.session.has_privilege
        assert enabled_flags(controller) == {"com.a.app": True, "com.b.app": False}
        assert harness.metadata.installed_calls == 0
        assert harness.statuses[0] == ("Root access granted", Severity.SUCCESS)
        assert controller.loading is False

    def test_root_denied_uses_fallback(self, runner, tmp_path):
        harness = Harness(runner, tmp_path, granted=False)
        controller = harness.start()
        assert not controller.session.has_privilege
        assert harness.root.commands == []
        assert harness.metadata.installed_calls == 1
        assert enabled_flags(controller) == {"com.a.app": True, "com.b.app": True}
        assert harness.denied == 1
        assert harness.statuses[0][1] == Severity.ERROR

    def test_retry_after_grant_reloads_with_root(self, runner, tmp_path):
        harness = Harness(runner, tmp_path, granted=False)
        controller = harness.start()
        harness.prober.granted = True
        controller.retry_access()
        settle(runner)
        assert controller.session.has_privilege
        assert enabled_flags(controller)["com.b.app"] is False

    def test_slow_fallback_build_does_not_overwrite_root_build(self, runner, tmp_path):
        metadata = GatedMetadata([
            meta("com.a.app", "A app"),
            meta("com.b.app", "B app", enabled=True),
        ])
        harness = Harness(runner, tmp_path, granted=False, metadata=metadata)
        controller = harness.controller
        controller.start()
        drain_until(runner, metadata.entered.is_set)

        harness.prober.granted = True
        controller.retry_access()
        drain_until(runner, lambda: controller.session.has_privilege and not controller.loading)
        assert enabled_flags(controller) == {"com.a.app": True, "com.b.app": False}

        metadata.release.set()
        settle(runner)
        assert controller.session.has_privilege
        assert controller.loading is False
        assert enabled_flags(controller) == {"com.a.app": True, "com.b.app": False}

    def test_stale_build_failure_is_not_reported(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        controller = harness.start()
        statuses_before = len(harness.statuses)
        controller.reload()
        stale = controller._generation - 1
        controller._on_catalog_failed(stale, OSError("old"))
        assert len(harness.statuses) == statuses_before
        assert controller.loading is True
        settle(runner)
        assert controller.loading is False

    def test_load_failure_is_reported(self, runner, tmp_path):
        metadata = FakeMetadata(installed_error=OSError("pm crashed"))
        harness = Harness(runner, tmp_path, granted=False, metadata=metadata)
        controller = harness.start()
        assert len(controller.session.catalog) == 0
        assert controller.loading is False
        message, severity = harness.last_status
        assert severity == Severity.ERROR
        assert "pm crashed" in message


class TestToggle:
    def test_freeze_then_unfreeze(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        harness.root.responses.update({"am force-stop": OK, "pm disable-user": OK, "pm enable": OK})
        controller = harness.start()

        assert controller.request_toggle("com.a.app", False)
        settle(runner)
        assert enabled_flags(controller) == {"com.a.app": False, "com.b.app": False}
        assert harness.last_status == ("A app frozen", Severity.SUCCESS)

        assert controller.request_toggle("com.a.app", True)
        settle(runner)
        assert enabled_flags(controller) == {"com.a.app": True, "com.b.app": False}
        assert harness.last_status == ("A app unfrozen", Severity.SUCCESS)

    def test_failed_freeze_leaves_flag_unchanged(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        harness.root.responses.update({
            "am force-stop": OK,
            "pm disable-user": CommandResult(False, "ERROR: permission denied\n"),
        })
        controller = harness.start()
        changes_before = harness.changes

        controller.request_toggle("com.a.app", False)
        settle(runner)

        assert controller.session.catalog.get("com.a.app").enabled is True
        message, severity = harness.last_status
        assert severity == Severity.ERROR
        assert "permission denied" in message
        assert harness.changes > changes_before
        assert not controller.is_pending("com.a.app")

    def test_toggle_without_root_is_refused(self, runner, tmp_path):
        harness = Harness(runner, tmp_path, granted=False)
        controller = harness.start()
        assert controller.request_toggle("com.a.app", False) is False
        assert harness.last_status[1] == Severity.ERROR
        assert "Root access is required" in harness.last_status[0]
        assert not any("disable-user" in command for command in harness.root.commands)

    def test_second_toggle_while_pending_is_refused(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        controller = harness.start()
        controller._pending.add("com.a.app")
        assert controller.request_toggle("com.a.app", False) is False
        assert harness.last_status[1] == Severity.WARNING

    def test_unknown_package_is_ignored(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        controller = harness.start()
        changes_before = harness.changes
        assert controller.request_toggle("com.nope", False) is False
        # Re-rendered so the flipped switch returns to its real position.
        assert harness.changes == changes_before + 1
        assert not controller.is_pending("com.nope")


class TestFavoritesAndFilter:
    def test_toggle_favorite_persists(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        controller = harness.start()

        controller.toggle_favorite("com.b.app")
        assert controller.is_favorite("com.b.app")
        assert harness.last_status == ("B app added to favorites", Severity.SUCCESS)
        assert FavoritesStore(Preferences(str(tmp_path / "prefs.json"))).load() == {"com.b.app"}

        controller.toggle_favorite("com.b.app")
        assert not controller.is_favorite("com.b.app")
        assert FavoritesStore(Preferences(str(tmp_path / "prefs.json"))).load() == set()

    def test_filter_and_counts(self, runner, tmp_path):
        controller = Harness(runner, tmp_path).start()
        controller.toggle_favorite("com.b.app")
        controller.toggle_favorite("com.uninstalled")

        controller.set_filter(FilterState.FAVORITES)
        assert [record.identifier for record in controller.visible()] == ["com.b.app"]
        counts = controller.counts()
        assert (counts.total, counts.enabled, counts.disabled, counts.favorited, counts.visible) == (2, 1, 1, 2, 1)
        assert controller.summary_text() == "Showing 1 favorite apps (total: 1 enabled / 1 frozen / 2 favorites)"

        controller.set_filter(FilterState.ALL)
        assert len(controller.visible()) == 2
        assert controller.summary_text() == "Showing 2 apps (total: 1 enabled / 1 frozen / 2 favorites)"


class TestLaunchAndDetails:
    def test_launch_enabled_app(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        controller = harness.start()
        controller.request_launch("com.a.app")
        settle(runner)
        assert harness.last_status == ("Launching A app", Severity.SUCCESS)
        assert harness.shell.commands == ["monkey -p com.a.app -c android.intent.category.LAUNCHER 1"]

    def test_launch_frozen_app_warns(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        controller = harness.start()
        controller.request_launch("com.b.app")
        assert harness.last_status == ("Unfreeze B app before launching it", Severity.WARNING)
        assert harness.shell.commands == []

    def test_launch_without_entry_point_warns(self, runner, tmp_path):
        shell = FakeExecutor(default=CommandResult(True, "** No activities found to run, monkey aborted.\n"))
        harness = Harness(runner, tmp_path, shell=shell)
        controller = harness.start()
        controller.request_launch("com.a.app")
        settle(runner)
        assert harness.last_status == ("A app cannot be launched", Severity.WARNING)

    def test_details(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        controller = harness.start()
        controller.toggle_favorite("com.b.app")
        controller.request_details("com.b.app")
        settle(runner)
        assert harness.details == [AppDetails("com.b.app", "B app", True, STATE_FROZEN, None)]

    def test_details_need_root(self, runner, tmp_path):
        harness = Harness(runner, tmp_path, granted=False)
        controller = harness.start()
        controller.request_details("com.a.app")
        settle(runner)
        assert harness.details == []
        assert harness.last_status[1] == Severity.ERROR

    def test_force_stop(self, runner, tmp_path):
        harness = Harness(runner, tmp_path)
        harness.root.responses["am force-stop"] = OK
        controller = harness.start()
        controller.request_force_stop("com.b.app")
        settle(runner)
        assert harness.last_status == ("B app force stopped", Severity.SUCCESS)
