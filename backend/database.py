"""
Database models and operations for CodeDrop
Uses SQLite for persistent storage of deployments, settings and the audit trail
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import create_engine, Column, String, Integer, Boolean, DateTime, JSON, Text, CheckConstraint, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import os
import logging

from config.settings import DeploySettings

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class Deployment(Base):
    """One proposed file set through its review lifecycle"""
    __tablename__ = "deployments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    target_type = Column(String(20), nullable=False, default='theme')  # 'theme', 'plugin', 'mu-plugin'
    target_slug = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default='pending')
    files_manifest = Column(JSON, nullable=False, default=list)  # [{path, content}] as submitted
    validation_result = Column(JSON, nullable=True)  # {valid, errors, warnings}
    created_by = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    deployed_at = Column(DateTime, nullable=True)
    rolled_back_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_deployments_status', 'status'),
        Index('idx_deployments_target_type', 'target_type'),
        Index('idx_deployments_created_at', 'created_at'),
    )


class GlobalSettings(Base):
    """Global deployment settings (single row)"""
    __tablename__ = "global_settings"

    id = Column(Integer, primary_key=True, default=1)
    __table_args__ = (
        # Ensure only one settings row exists
        CheckConstraint('id = 1', name='single_settings_row'),
    )
    enabled = Column(Boolean, default=True)  # Kill switch
    allowed_targets = Column(JSON, nullable=True)  # List of target types, NULL = all known types
    max_file_size = Column(Integer, default=512000)  # Bytes
    max_deployment_size = Column(Integer, default=5242880)  # Bytes
    cleanup_days = Column(Integer, default=30)  # Staging retention (1-365)
    notify_on_submit = Column(Boolean, default=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AuditLog(Base):
    """Append-only security audit trail, trimmed to a fixed size"""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    actor_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    source_ip = Column(String, nullable=True)


class DatabaseManager:
    """
    Database management and operations.

    Constructed once at process start and passed to the components that
    need it. Tests construct one per temporary database file.
    """

    def __init__(self, db_path: str = "data/codedrop.db", initial_settings: Optional[dict] = None):
        self.db_path = db_path

        # Ensure data directory exists
        data_dir = os.path.dirname(db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)

        # Note: SQLite doesn't support pool_timeout/pool_recycle, but timeout in connect_args works
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={
                "check_same_thread": False,
                "timeout": 20  # 20 second lock timeout
            },
            poolclass=StaticPool,
            echo=False
        )

        self._configure_sqlite_pragmas()

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=self.engine)

        self._secure_database_file()
        self._initialize_defaults(initial_settings or {})

    def _configure_sqlite_pragmas(self):
        """
        Configure SQLite PRAGMA statements for production performance and safety.

        - WAL mode: Write-Ahead Logging for concurrent reads during writes
        - SYNCHRONOUS=NORMAL: Safe with WAL, faster than FULL
        - TEMP_STORE=MEMORY: Keep temp tables in RAM
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.execute(text("PRAGMA temp_store=MEMORY"))
                conn.commit()

            logger.info("SQLite PRAGMA configuration applied successfully (WAL mode)")
        except Exception as e:
            logger.error(f"Failed to configure SQLite PRAGMAs: {e}", exc_info=True)
            # Non-fatal: SQLite will work with defaults

    def _secure_database_file(self):
        """Set secure file permissions on the SQLite database file"""
        try:
            if os.path.exists(self.db_path):
                # Set file permissions to 600 (read/write for owner only)
                os.chmod(self.db_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions on database file {self.db_path}: {e}")

    def _initialize_defaults(self, initial_settings: dict):
        """Seed the settings row on first start; an existing row is left alone"""
        with self.get_session() as session:
            settings = session.query(GlobalSettings).first()
            if not settings:
                settings = GlobalSettings(id=1, **initial_settings)
                session.add(settings)
                session.commit()

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def get_settings(self) -> GlobalSettings:
        """Get global settings"""
        with self.get_session() as session:
            settings = session.query(GlobalSettings).first()
            session.expunge(settings)
            return settings

    def update_settings(self, updates: dict) -> GlobalSettings:
        """
        Update global settings

        Input is validated by SettingsProvider.update(); only editable
        fields are applied here.
        """
        with self.get_session() as session:
            try:
                settings = session.query(GlobalSettings).first()

                for key, value in updates.items():
                    if key not in DeploySettings.EDITABLE_FIELDS:
                        logger.warning(f"Rejected unknown setting key: {key}")
                        continue
                    setattr(settings, key, value)
                    logger.debug(f"Updated setting: {key} = {value}")

                settings.updated_at = datetime.now(timezone.utc)
                session.commit()
                session.refresh(settings)
                # Expunge the object so it's not tied to the session
                session.expunge(settings)

                logger.info(f"Updated {len(updates)} settings successfully")
                return settings

            except Exception as e:
                session.rollback()
                logger.error(f"Failed to update global settings: {e}", exc_info=True)
                raise
