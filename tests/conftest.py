"""
Pytest configuration and shared fixtures.

Nothing here touches the real /etc: every path lives under tmp_path and
commands go through FakeRunner.
"""
import logging

import pytest

from net_tweaker import LOGGER_NAME, ColorManager, MarkerPatcher, TweakContext


class FakeRunner:
    """Stands in for CommandRunner; records calls and returns canned results"""

    def __init__(self):
        self.calls = []
        self.envs = []
        self.responses = {}
        self.side_effects = {}

    def respond(self, cmd, code=0, stdout='', stderr=''):
        self.responses[tuple(cmd)] = (code, stdout, stderr)

    def on(self, cmd, callback):
        self.side_effects[tuple(cmd)] = callback

    def run(self, cmd, timeout=30, check=False, env=None):
        cmd = cmd.split() if isinstance(cmd, str) else list(cmd)
        self.calls.append(cmd)
        self.envs.append(env)
        callback = self.side_effects.get(tuple(cmd))
        if callback:
            callback()
        return self.responses.get(tuple(cmd), (0, '', ''))

    def commands(self):
        return [' '.join(cmd) for cmd in self.calls]


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def patcher():
    return MarkerPatcher(logging.getLogger(LOGGER_NAME))


@pytest.fixture
def color_manager():
    manager = ColorManager()
    manager.set_colors_enabled(False)
    return manager


@pytest.fixture
def make_context(runner, patcher, color_manager):
    """Build a TweakContext for a tweak module with settings overrides"""
    def _make(module, confirmed=True, **overrides):
        settings = dict(module.DEFAULTS)
        settings.update(overrides)
        return TweakContext(
            name=module.__name__.split('.')[-1],
            settings=settings,
            logger=logging.getLogger(LOGGER_NAME),
            runner=runner,
            patcher=patcher,
            color_manager=color_manager,
            confirmed=confirmed,
        )
    return _make


class RecordingReloader:
    """Reloader that records each call and what the target held at that moment"""

    description = "recording reloader"

    def __init__(self, path=None):
        self.path = path
        self.calls = 0
        self.seen_contents = []

    def apply(self):
        self.calls += 1
        if self.path is not None:
            self.seen_contents.append(self.path.read_text())


@pytest.fixture
def recording_reloader():
    return RecordingReloader
