"""
Persistence for deployment records.

The store is the only writer of the deployments table. Status changes go
through transition(), which checks the graph in DeploymentStateMachine and
then issues a single conditional UPDATE keyed on the expected status, so
two concurrent approvals of the same record cannot both succeed.
"""

import logging
import math
from typing import Any, Dict, Optional

from sqlalchemy import asc, desc, func

from database import DatabaseManager, Deployment, utcnow
from .exceptions import NotFoundError, StateError
from .models import DeploymentPage, DeploymentRecord
from .state_machine import DeploymentStateMachine

logger = logging.getLogger(__name__)

# Columns a listing may be ordered by
ORDERABLE_COLUMNS = {
    'id': Deployment.id,
    'name': Deployment.name,
    'status': Deployment.status,
    'target_type': Deployment.target_type,
    'created_at': Deployment.created_at,
    'deployed_at': Deployment.deployed_at,
}

DEFAULT_ORDERBY = 'created_at'
DEFAULT_ORDER = 'desc'
MAX_PER_PAGE = 100

# Fields accepted by create()
CREATE_FIELDS = (
    'name', 'description', 'target_type', 'target_slug',
    'files_manifest', 'validation_result', 'created_by',
)


class DeploymentStore:
    """
    CRUD and compare-and-swap status transitions for deployment records.

    Args:
        db: Database manager providing sessions
        state_machine: Transition graph (a default instance if omitted)
    """

    def __init__(self, db: DatabaseManager, state_machine: Optional[DeploymentStateMachine] = None):
        self.db = db
        self.state_machine = state_machine or DeploymentStateMachine()

    def create(self, fields: Dict[str, Any]) -> int:
        """
        Insert a new record in the initial 'pending' status.

        Args:
            fields: name, description, target_type, target_slug,
                files_manifest, validation_result, created_by

        Returns:
            The new deployment id
        """
        unknown = set(fields) - set(CREATE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown deployment fields: {', '.join(sorted(unknown))}")

        with self.db.get_session() as session:
            try:
                row = Deployment(
                    name=fields['name'],
                    description=fields.get('description') or '',
                    target_type=fields['target_type'],
                    target_slug=fields['target_slug'],
                    status=self.state_machine.INITIAL_STATE,
                    files_manifest=list(fields.get('files_manifest') or []),
                    validation_result=fields.get('validation_result'),
                    created_by=fields['created_by'],
                    created_at=utcnow(),
                )
                session.add(row)
                session.commit()
                deployment_id = row.id
            except Exception:
                session.rollback()
                raise

        logger.info(
            f"Created deployment {deployment_id} ({fields['target_type']}/{fields['target_slug']}) "
            f"by {fields['created_by']}"
        )
        return deployment_id

    def get(self, deployment_id: int) -> Optional[DeploymentRecord]:
        with self.db.get_session() as session:
            row = session.query(Deployment).filter(Deployment.id == deployment_id).first()
            if row is None:
                return None
            return DeploymentRecord.from_model(row)

    def list(
        self,
        status: Optional[str] = None,
        target_type: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
        orderby: str = DEFAULT_ORDERBY,
        order: str = DEFAULT_ORDER,
    ) -> DeploymentPage:
        """
        Filtered, paginated listing.

        Out-of-range paging values are clamped and unknown ordering values
        fall back to the defaults rather than raising.
        """
        per_page = max(1, min(MAX_PER_PAGE, int(per_page or 1)))
        page = max(1, int(page or 1))
        column = ORDERABLE_COLUMNS.get(orderby, ORDERABLE_COLUMNS[DEFAULT_ORDERBY])
        direction = asc if str(order).lower() == 'asc' else desc

        with self.db.get_session() as session:
            query = session.query(Deployment)
            if status:
                query = query.filter(Deployment.status == status)
            if target_type:
                query = query.filter(Deployment.target_type == target_type)

            total = query.count()
            rows = (
                query.order_by(direction(column), direction(Deployment.id))
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )

            return DeploymentPage(
                items=[DeploymentRecord.from_model(row) for row in rows],
                total=total,
                pages=math.ceil(total / per_page) if total else 0,
                page=page,
                per_page=per_page,
            )

    def transition(
        self,
        deployment_id: int,
        new_status: str,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> DeploymentRecord:
        """
        Move a record to new_status if the graph allows it.

        The UPDATE is conditional on the status read just before, so a
        concurrent transition of the same record makes this one fail with
        StateError instead of silently overwriting it.

        Args:
            deployment_id: Record to update
            new_status: Target status
            extra_fields: Audit-trail columns to set in the same UPDATE

        Returns:
            The updated record

        Raises:
            NotFoundError: No such record
            StateError: Transition not allowed from the current status
            ValueError: extra_fields names a column the transition may not set
        """
        extra_fields = dict(extra_fields or {})
        disallowed = set(extra_fields) - self.state_machine.allowed_fields(new_status)
        if disallowed:
            raise ValueError(
                f"Fields not settable on transition to '{new_status}': {', '.join(sorted(disallowed))}"
            )

        current = self.get(deployment_id)
        if current is None:
            raise NotFoundError(deployment_id)

        self.state_machine.require_transition(deployment_id, current.status, new_status)

        values = {Deployment.status: new_status}
        for key, value in extra_fields.items():
            values[getattr(Deployment, key)] = value

        with self.db.get_session() as session:
            try:
                updated = (
                    session.query(Deployment)
                    .filter(Deployment.id == deployment_id, Deployment.status == current.status)
                    .update(values, synchronize_session=False)
                )
                session.commit()
            except Exception:
                session.rollback()
                raise

        if updated == 0:
            # Lost the race: report against whatever status won
            latest = self.get(deployment_id)
            if latest is None:
                raise NotFoundError(deployment_id)
            logger.warning(
                f"Concurrent transition on deployment {deployment_id}: expected "
                f"'{current.status}', found '{latest.status}'"
            )
            raise StateError(deployment_id, latest.status, new_status)

        logger.info(f"Deployment {deployment_id}: {current.status} -> {new_status}")
        return self.get(deployment_id)

    def count_by_status(self) -> Dict[str, int]:
        """Number of records per status, every known status present"""
        counts = {state: 0 for state in sorted(self.state_machine.VALID_STATES)}
        with self.db.get_session() as session:
            rows = session.query(Deployment.status, func.count(Deployment.id)).group_by(Deployment.status).all()
            for status, count in rows:
                counts[status] = count
        return counts
