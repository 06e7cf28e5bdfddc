"""
Unit tests for the access guard.

Tests cover:
- Privilege, kill switch, transport and rate-limit refusals
- Check order (a refused request never consumes a rate-limit slot)
- Local development host exemption
- Security audit logging of refusals
"""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from deployment.exceptions import AccessError
from security.access_guard import AccessGuard
from security.rate_limiting import RateLimiter


@pytest.fixture
def guard():
    return AccessGuard(RateLimiter(10, 60), site_host='localhost:8080')


@pytest.fixture
def public_guard():
    return AccessGuard(RateLimiter(10, 60), site_host='shop.example.com')


def _raises(code, fn, *args):
    with pytest.raises(AccessError) as exc_info:
        fn(*args)
    assert exc_info.value.code == code
    return exc_info.value


@pytest.mark.unit
class TestAuthorizeMutation:

    def test_privileged_local_request_passes(self, guard, privileged_actor, make_settings):
        guard.authorize_mutation(privileged_actor, make_settings(), 'submit')

    def test_unprivileged(self, guard, unprivileged_actor, make_settings):
        error = _raises('forbidden', guard.authorize_mutation, unprivileged_actor, make_settings(), 'submit')

        assert error.status_code == 403

    @pytest.mark.parametrize("operation", ['submit', 'approve', 'rollback'])
    def test_kill_switch(self, guard, privileged_actor, make_settings, operation):
        error = _raises('disabled', guard.authorize_mutation, privileged_actor,
                        make_settings(enabled=False), operation)

        assert error.status_code == 503

    @pytest.mark.parametrize("operation", ['reject', 'settings'])
    def test_kill_switch_does_not_block_review_housekeeping(self, guard, privileged_actor, make_settings, operation):
        guard.authorize_mutation(privileged_actor, make_settings(enabled=False), operation)

    def test_https_required_for_public_host(self, public_guard, privileged_actor, make_settings):
        actor = replace(privileged_actor, is_secure=False)

        error = _raises('https_required', public_guard.authorize_mutation, actor, make_settings(), 'reject')

        assert error.status_code == 403

    def test_https_request_passes(self, public_guard, privileged_actor, make_settings):
        actor = replace(privileged_actor, is_secure=True)

        public_guard.authorize_mutation(actor, make_settings(), 'approve')

    def test_rate_limit(self, guard, privileged_actor, make_settings):
        settings = make_settings(rate_limit_max=2, rate_limit_window=60)
        guard.authorize_mutation(privileged_actor, settings, 'submit')
        guard.authorize_mutation(privileged_actor, settings, 'approve')

        error = _raises('rate_limited', guard.authorize_mutation, privileged_actor, settings, 'rollback')

        assert error.status_code == 429
        assert error.retry_after >= 1

    def test_reject_is_not_rate_limited(self, guard, privileged_actor, make_settings):
        settings = make_settings(rate_limit_max=1)

        for _ in range(5):
            guard.authorize_mutation(privileged_actor, settings, 'reject')

        guard.authorize_mutation(privileged_actor, settings, 'submit')

    def test_refused_requests_do_not_consume_slots(self, public_guard, privileged_actor, make_settings):
        settings = make_settings(rate_limit_max=1)
        insecure = replace(privileged_actor, is_secure=False)
        secure = replace(privileged_actor, is_secure=True)

        for _ in range(3):
            _raises('https_required', public_guard.authorize_mutation, insecure, settings, 'submit')
            _raises('disabled', public_guard.authorize_mutation, secure, replace(settings, enabled=False), 'submit')

        public_guard.authorize_mutation(secure, settings, 'submit')

    def test_privilege_checked_before_kill_switch(self, guard, unprivileged_actor, make_settings):
        _raises('forbidden', guard.authorize_mutation, unprivileged_actor, make_settings(enabled=False), 'submit')


@pytest.mark.unit
class TestReads:

    def test_read_needs_privilege_only(self, public_guard, privileged_actor):
        actor = replace(privileged_actor, is_secure=False)

        public_guard.authorize_read(actor)

    def test_unprivileged_read(self, guard, unprivileged_actor):
        _raises('forbidden', guard.authorize_read, unprivileged_actor)


@pytest.mark.unit
class TestLocalDevelopmentHosts:

    @pytest.mark.parametrize("host", [
        'localhost', 'LOCALHOST:8080', '127.0.0.1', '127.0.0.1:8000', '[::1]:8080', '::1',
        'shop.local', 'shop.test:8443',
    ])
    def test_exempt(self, host):
        assert AccessGuard.is_local_development_host(host) is True

    @pytest.mark.parametrize("host", [None, '', 'example.com', 'localhost.example.com', 'test.example.org', 'local'])
    def test_not_exempt(self, host):
        assert AccessGuard.is_local_development_host(host) is False

    @pytest.mark.parametrize("site_host", [None, '', 'shop.example.com'])
    def test_plain_http_refused_unless_site_is_local(self, privileged_actor, make_settings, site_host):
        guard = AccessGuard(RateLimiter(10, 60), site_host=site_host)
        actor = replace(privileged_actor, is_secure=False)

        _raises('https_required', guard.authorize_mutation, actor, make_settings(), 'submit')


@pytest.mark.unit
class TestSecurityAudit:

    def test_refusal_is_logged(self, privileged_actor, make_settings):
        security_audit = MagicMock()
        guard = AccessGuard(RateLimiter(10, 60), security_audit=security_audit, site_host="localhost")

        _raises('disabled', guard.authorize_mutation, privileged_actor, make_settings(enabled=False), 'approve')

        security_audit.log_access_refused.assert_called_once_with(
            client_ip='127.0.0.1', actor_id='reviewer', operation='approve', reason='disabled'
        )

    def test_rate_limit_is_logged(self, privileged_actor, make_settings):
        security_audit = MagicMock()
        guard = AccessGuard(RateLimiter(1, 60), security_audit=security_audit, site_host="localhost")
        settings = make_settings(rate_limit_max=1)
        guard.authorize_mutation(privileged_actor, settings, 'submit')

        _raises('rate_limited', guard.authorize_mutation, privileged_actor, settings, 'submit')

        security_audit.log_rate_limit_violation.assert_called_once()
        assert security_audit.log_rate_limit_violation.call_args.kwargs['operation'] == 'submit'
