import pytest

from appfreezer import (
    CommandResult, MetadataError, MetadataProvider, PackageMetadata, TaskRunner,
)


class FakeExecutor:
    """Answers commands from a table of substring -> CommandResult and records every call."""

    def __init__(self, responses=None, default=None):
        self.responses = dict(responses or {})
        self.default = default or CommandResult(False, "")
        self.commands: list[str] = []

    def run(self, command: str) -> CommandResult:
        self.commands.append(command)
        for fragment, result in self.responses.items():
            if fragment in command:
                return result
        return self.default


class FakeMetadata(MetadataProvider):
    def __init__(self, packages=None, broken=(), installed_error=None):
        self.packages = {meta.identifier: meta for meta in (packages or [])}
        self.broken = set(broken)
        self.installed_error = installed_error
        self.installed_calls = 0

    def resolve(self, identifier: str) -> PackageMetadata:
        if identifier in self.broken or identifier not in self.packages:
            raise MetadataError(f"cannot resolve {identifier}")
        return self.packages[identifier]

    def installed(self) -> list[PackageMetadata]:
        self.installed_calls += 1
        if self.installed_error is not None:
            raise self.installed_error
        return list(self.packages.values())


def meta(identifier, label=None, is_system=False, enabled=True, version=None):
    return PackageMetadata(identifier, label or identifier, is_system, enabled, None, version)


def listing(*identifiers):
    return "".join(f"package:{identifier}\n" for identifier in identifiers)


@pytest.fixture
def runner():
    runner = TaskRunner(max_workers=2)
    yield runner
    runner.shutdown()


def settle(runner: TaskRunner):
    """Runs background tasks and their callbacks until nothing new is queued."""
    while True:
        runner.wait(timeout=5)
        if not runner.drain():
            return
