from __future__ import annotations

import os

import pytest

from notevault.core.access.models import Actor, Role
from notevault.core.config.manager import ConfigManager
from notevault.core.config.paths import ConfigFsPaths
from notevault.core.engine import Engine

from .helpers.fakes import FakeClock, ListLogger


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated repo root with config/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    return fs


@pytest.fixture
def config_manager(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=None, read_only=False)
    cm.load_all()
    return cm


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return ListLogger()


@pytest.fixture
def engine(tmp_path, clock, logger):
    eng = Engine(root=str(tmp_path), clock=clock.time, logger=logger)
    yield eng
    eng.close()


@pytest.fixture
def coach():
    return Actor(user_id="coach-1", role=Role.coach, org_id="org-1", team_ids=["team-a"])


@pytest.fixture
def other_coach():
    return Actor(user_id="coach-2", role=Role.coach, org_id="org-1", team_ids=["team-b"])


@pytest.fixture
def supervisor():
    return Actor(user_id="sup-1", role=Role.supervisor, org_id="org-1", team_ids=["team-a"])


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role=Role.admin, org_id="org-1")


@pytest.fixture
def client_actor():
    return Actor(user_id="client-x", role=Role.client, org_id="org-1")
