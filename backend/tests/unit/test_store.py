"""
Unit tests for deployment record persistence.

Tests cover:
- create() / get()
- Conditional status transitions (compare-and-swap)
- Field whitelist per transition
- Filtered, clamped, ordered listing
- Per-status counts
"""

from datetime import datetime, timedelta, timezone

import pytest

from database import Deployment
from deployment.exceptions import NotFoundError, StateError


def _fields(name="hero-banner", target_type='theme', created_by='ci-bot'):
    return {
        'name': name,
        'description': 'Adds a hero banner',
        'target_type': target_type,
        'target_slug': 'storefront',
        'files_manifest': [{'path': 'inc/banner.php', 'content': '<?php\n'}],
        'validation_result': {'valid': True, 'errors': [], 'warnings': []},
        'created_by': created_by,
    }


@pytest.mark.unit
class TestCreate:

    def test_create_and_get(self, store):
        deployment_id = store.create(_fields())

        record = store.get(deployment_id)

        assert record.status == 'pending'
        assert record.name == 'hero-banner'
        assert record.created_by == 'ci-bot'
        assert record.files_count == 1
        assert record.files[0].path == 'inc/banner.php'
        assert record.created_at is not None
        assert record.reviewed_by is None
        assert record.deployed_at is None

    def test_unknown_fields_rejected(self, store):
        fields = _fields()
        fields['status'] = 'deployed'

        with pytest.raises(ValueError, match="status"):
            store.create(fields)

    def test_get_missing(self, store):
        assert store.get(404) is None

    def test_ids_are_unique(self, store):
        assert store.create(_fields()) != store.create(_fields())


@pytest.mark.unit
class TestTransition:

    def test_pending_to_deployed(self, store):
        deployment_id = store.create(_fields())
        now = datetime.now(timezone.utc)

        record = store.transition(deployment_id, 'deployed', {
            'reviewed_by': 'reviewer',
            'reviewed_at': now,
            'deployed_at': now,
        })

        assert record.status == 'deployed'
        assert record.reviewed_by == 'reviewer'
        assert record.deployed_at is not None

    def test_invalid_transition_leaves_record_unchanged(self, store):
        deployment_id = store.create(_fields())
        store.transition(deployment_id, 'rejected', {'reviewed_by': 'reviewer'})

        with pytest.raises(StateError) as exc_info:
            store.transition(deployment_id, 'deployed', {'reviewed_by': 'someone-else'})

        assert exc_info.value.current_status == 'rejected'
        record = store.get(deployment_id)
        assert record.status == 'rejected'
        assert record.reviewed_by == 'reviewer'

    def test_second_approval_fails(self, store):
        deployment_id = store.create(_fields())
        store.transition(deployment_id, 'deployed')

        with pytest.raises(StateError):
            store.transition(deployment_id, 'deployed')

    def test_lost_race_reports_winning_status(self, store, test_db):
        """A status change between the read and the UPDATE is detected"""
        deployment_id = store.create(_fields())
        real_get = store.get
        calls = {'n': 0}

        def get_then_race(record_id):
            record = real_get(record_id)
            calls['n'] += 1
            if calls['n'] == 1:
                # Another worker rejects the record right after our read
                with test_db.get_session() as session:
                    session.query(Deployment).filter(Deployment.id == record_id).update(
                        {Deployment.status: 'rejected'}
                    )
                    session.commit()
            return record

        store.get = get_then_race

        with pytest.raises(StateError) as exc_info:
            store.transition(deployment_id, 'deployed')

        assert exc_info.value.current_status == 'rejected'
        assert real_get(deployment_id).status == 'rejected'

    def test_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.transition(999, 'deployed')

    def test_disallowed_field(self, store):
        deployment_id = store.create(_fields())

        with pytest.raises(ValueError, match="deployed_at"):
            store.transition(deployment_id, 'rejected', {'deployed_at': datetime.now(timezone.utc)})

        assert store.get(deployment_id).status == 'pending'

    def test_failed_can_replace_validation_result(self, store):
        deployment_id = store.create(_fields())
        report = {'valid': False, 'errors': [{'code': 'staging_failed', 'message': 'disk full'}], 'warnings': []}

        record = store.transition(deployment_id, 'failed', {'validation_result': report})

        assert record.validation_result == report


@pytest.mark.unit
class TestList:

    def _seed(self, store):
        ids = []
        for i, target_type in enumerate(['theme', 'plugin', 'theme', 'mu-plugin', 'theme']):
            ids.append(store.create(_fields(name=f"change-{i}", target_type=target_type)))
        store.transition(ids[0], 'rejected')
        store.transition(ids[1], 'deployed')
        return ids

    def test_filters(self, store):
        self._seed(store)

        assert store.list(status='pending').total == 3
        assert store.list(target_type='theme').total == 3
        assert store.list(status='pending', target_type='theme').total == 2

    def test_default_order_newest_first(self, store):
        ids = self._seed(store)

        page = store.list()

        assert [r.id for r in page.items] == list(reversed(ids))

    def test_ascending_by_name(self, store):
        self._seed(store)

        page = store.list(orderby='name', order='asc')

        assert [r.name for r in page.items] == [f"change-{i}" for i in range(5)]

    def test_unknown_orderby_falls_back(self, store):
        ids = self._seed(store)

        page = store.list(orderby='files_manifest; DROP TABLE deployments', order='sideways')

        assert [r.id for r in page.items] == list(reversed(ids))

    def test_pagination(self, store):
        self._seed(store)

        page = store.list(page=2, per_page=2)

        assert page.total == 5
        assert page.pages == 3
        assert page.page == 2
        assert len(page.items) == 2

    @pytest.mark.parametrize("page,per_page,expected_page,expected_per_page", [
        (0, 20, 1, 20),
        (-3, 0, 1, 1),
        (1, 500, 1, 100),
    ])
    def test_clamping(self, store, page, per_page, expected_page, expected_per_page):
        self._seed(store)

        result = store.list(page=page, per_page=per_page)

        assert result.page == expected_page
        assert result.per_page == expected_per_page

    def test_empty(self, store):
        page = store.list()

        assert page.items == []
        assert page.total == 0
        assert page.pages == 0

    def test_same_timestamp_orders_by_id(self, store, test_db):
        ids = [store.create(_fields(name=f"same-{i}")) for i in range(3)]
        fixed = datetime(2024, 1, 1, tzinfo=timezone.utc) - timedelta(days=1)
        with test_db.get_session() as session:
            session.query(Deployment).update({Deployment.created_at: fixed})
            session.commit()

        assert [r.id for r in store.list().items] == list(reversed(ids))


@pytest.mark.unit
def test_count_by_status(store):
    first = store.create(_fields())
    store.create(_fields())
    store.transition(first, 'deployed')

    counts = store.count_by_status()

    assert counts == {'deployed': 1, 'failed': 0, 'pending': 1, 'rejected': 0, 'rolled_back': 0}
