import pathlib
import sys
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import devenv_sequencer


class FakeRunner(devenv_sequencer.CommandRunner):
    """CommandRunner that answers from a script instead of spawning processes.

    ``responses`` maps a command prefix (tuple of leading arguments) to a
    ``(returncode, stdout, stderr)`` triple or to a callable returning one.
    The longest matching prefix wins; unmatched commands succeed silently.
    """

    def __init__(self, tools=(), responses=None, dry_run: bool = False) -> None:
        super().__init__(dry_run=dry_run)
        self.tools = set(tools)
        self.responses: Dict[Tuple[str, ...], object] = dict(responses or {})
        self.calls: List[List[str]] = []
        self.spawned: List[List[str]] = []
        self.timeouts: List[Optional[float]] = []
        self.cwd: Optional[pathlib.Path] = None

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.tools else None

    def spawn(self, cmd: Sequence[str]) -> None:
        self.spawned.append(list(cmd))

    def _execute(self, cmd, cwd=None, input=None, timeout=None):
        cmd = [str(arg) for arg in cmd]
        self.calls.append(cmd)
        self.cwd = cwd
        self.timeouts.append(timeout)
        best = None
        for prefix in self.responses:
            if tuple(cmd[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return devenv_sequencer.CommandResult(tuple(cmd), 0)
        response = self.responses[best]
        if callable(response):
            response = response(cmd)
        returncode, stdout, stderr = response
        return devenv_sequencer.CommandResult(tuple(cmd), returncode, stdout, stderr)

    def called(self, *prefix: str) -> bool:
        return any(tuple(call[: len(prefix)]) == prefix for call in self.calls)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def linux_profile():
    return devenv_sequencer.PlatformProfile(
        name="linux",
        package_managers=("dnf", "apt"),
        docker_strategy="service",
        rc_candidates=(".zshrc", ".bashrc"),
    )
