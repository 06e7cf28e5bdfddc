"""
Shared pytest fixtures for CodeDrop tests.

Fixtures provided:
- test_db: DatabaseManager on a temporary SQLite file
- make_settings: Factory for DeploySettings with overrides
- staging: StagingArea under tmp_path
- target_roots: Theme/plugin/mu-plugin roots under tmp_path
- engine: DeploymentEngine wired to staging + target_roots
- store: DeploymentStore on test_db
- service: Fully wired DeploymentService (PHP linter disabled)
- privileged_actor / unprivileged_actor: ActorContext tokens
- hero_banner_files: The storefront hero-banner submission

Tests never touch the real data directory: everything lives in tmp_path.
"""

import os
import sys
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from audit.audit_logger import AuditTrail
from config.settings import DeploySettings, SettingsProvider
from database import DatabaseManager
from deployment.engine import DeploymentEngine
from deployment.models import ActorContext, FileSpec
from deployment.service import DeploymentService, Submission
from deployment.staging import StagingArea
from deployment.state_machine import DeploymentStateMachine
from deployment.store import DeploymentStore
from deployment.validator import DeploymentValidator
from security.access_guard import AccessGuard
from security.rate_limiting import RateLimiter


BANNER_PHP = (
    "<?php\n"
    "function storefront_hero_banner() {\n"
    "    echo '<section class=\"hero\">Welcome</section>';\n"
    "}\n"
)

BANNER_CSS = ".hero { padding: 4rem 0; }\n"


@pytest.fixture(scope="function")
def test_db(tmp_path):
    """
    Create a temporary SQLite database for testing.

    Each test gets its own file so tests don't affect each other.
    """
    db = DatabaseManager(str(tmp_path / "db" / "codedrop.db"))
    yield db
    db.engine.dispose()


@pytest.fixture
def make_settings():
    """Build DeploySettings with keyword overrides"""
    def _make(**overrides) -> DeploySettings:
        return replace(DeploySettings(), **overrides)
    return _make


@pytest.fixture
def staging(tmp_path):
    return StagingArea(tmp_path / "staging")


@pytest.fixture
def target_roots(tmp_path):
    roots = {
        'theme': tmp_path / "content" / "themes",
        'plugin': tmp_path / "content" / "plugins",
        'mu-plugin': tmp_path / "content" / "mu-plugins",
    }
    for root in roots.values():
        root.mkdir(parents=True)
    return roots


@pytest.fixture
def engine(staging, target_roots):
    return DeploymentEngine(staging, target_roots)


@pytest.fixture
def store(test_db):
    return DeploymentStore(test_db, DeploymentStateMachine())


@pytest.fixture
def validator():
    """Validator that always uses the brace heuristic (no php binary needed)"""
    return DeploymentValidator(php_binary=None)


@pytest.fixture
def settings_provider(test_db):
    return SettingsProvider(test_db, base=DeploySettings())


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def service(test_db, store, validator, staging, engine, settings_provider, notifier):
    return DeploymentService(
        store=store,
        validator=validator,
        staging=staging,
        engine=engine,
        guard=AccessGuard(RateLimiter(10, 60), site_host="localhost"),
        audit=AuditTrail(test_db),
        settings_provider=settings_provider,
        notifier=notifier,
    )


@pytest.fixture
def privileged_actor():
    return ActorContext(actor_id="reviewer", is_privileged=True, source_ip="127.0.0.1", is_secure=False)


@pytest.fixture
def unprivileged_actor():
    return ActorContext(actor_id="visitor", is_privileged=False, source_ip="203.0.113.9", is_secure=True)


@pytest.fixture
def hero_banner_files():
    return [
        FileSpec(path="inc/banner.php", content=BANNER_PHP),
        FileSpec(path="assets/css/banner.css", content=BANNER_CSS),
    ]


@pytest.fixture
def hero_banner(hero_banner_files):
    return Submission(
        name="hero-banner",
        description="Adds a hero banner to the storefront theme",
        target_type="theme",
        target_slug="storefront",
        files=hero_banner_files,
    )
