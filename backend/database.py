"""
Database models and operations for the game server manager
Uses SQLite for persistent storage of compose files and managed game servers
"""

from datetime import datetime, timezone
from typing import Optional, Set
from sqlalchemy import create_engine, Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Text, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import os
import logging

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class ComposeFile(Base):
    """
    Single-service compose file managed through the deployment pipeline.

    Lifecycle status:
        draft -> deploying -> deployed -> stopped
                          |-> error
    """
    __tablename__ = "compose_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    content = Column(Text, nullable=False)  # Raw YAML text
    container_name = Column(String, nullable=True, unique=True)  # Also the compose project name
    status = Column(String, nullable=False, default='draft')  # draft, deploying, deployed, stopped, error
    deployed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)  # Raw diagnostic from the most recent failure
    version = Column(Integer, nullable=False, default=1)  # Incremented on content change
    validation_warnings = Column(JSON, nullable=False, default=list)
    template_name = Column(String, nullable=True)
    game_server_id = Column(Integer, ForeignKey("game_servers.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class GameServer(Base):
    """Managed game server, keyed by its container name"""
    __tablename__ = "game_servers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    connection_string = Column(String, nullable=False)
    container_name = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default='stopped')  # running, stopped, error
    is_managed = Column(Boolean, default=False)  # Created or adopted by a compose deployment
    compose_file_id = Column(Integer, nullable=True)
    logo = Column(String, default='')
    steam_app_id = Column(String, nullable=True)
    website_url = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DatabaseManager:
    """
    Database management and operations.

    One instance is created at application startup and shared by the routers.
    Sessions are created per operation via get_session(); objects stay readable
    after commit so they can be returned from the service layer.
    """

    def __init__(self, database_url: str = "sqlite:///data/gsm.db"):
        self.database_url = database_url

        if database_url.startswith('sqlite:///'):
            db_path = database_url[len('sqlite:///'):]
            data_dir = os.path.dirname(db_path)
            if data_dir:
                os.makedirs(data_dir, exist_ok=True)

        engine_kwargs = {"echo": False}
        if database_url.startswith('sqlite'):
            # Note: SQLite doesn't support pool_timeout/pool_recycle, but timeout in connect_args works
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 20
            }
            engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(database_url, **engine_kwargs)

        if database_url.startswith('sqlite'):
            self._configure_sqlite_pragmas()

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

        # Create tables if they don't exist
        Base.metadata.create_all(bind=self.engine)

    def _configure_sqlite_pragmas(self):
        """Enable WAL and foreign keys for concurrent request handlers"""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.execute(text("PRAGMA foreign_keys=ON"))
                conn.commit()
        except Exception as e:
            logger.error(f"Failed to configure SQLite PRAGMAs: {e}", exc_info=True)
            # Non-fatal: SQLite will work with defaults

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def get_reserved_container_names(
        self,
        session: Session,
        exclude: Optional[ComposeFile] = None
    ) -> Set[str]:
        """
        Collect container names already claimed by game servers and compose files.

        Args:
            session: Open database session
            exclude: Compose file whose own name (and the game server sharing it)
                     should not count as a conflict

        Returns:
            Set of container names in use
        """
        servers = session.query(GameServer.container_name)
        if exclude is not None and exclude.container_name:
            servers = servers.filter(GameServer.container_name != exclude.container_name)

        compose_files = session.query(ComposeFile.container_name).filter(
            ComposeFile.container_name.isnot(None)
        )
        if exclude is not None:
            compose_files = compose_files.filter(ComposeFile.id != exclude.id)

        names = {row[0] for row in servers.all()}
        names.update(row[0] for row in compose_files.all())
        return names
