"""
Run history persistence.

One row per finished run (including aborted ones), written after the report
is finalized. History is informational: write failures are logged and never
change the outcome of a run.
"""

import json
import logging
import os
from typing import List

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from backupflow.models import Base, RunHistory

logger = logging.getLogger(__name__)


class HistoryStore:
    """SQLAlchemy-backed run history."""

    def __init__(self, database_uri: str):
        """
        Initialize the store, creating the table on first use.

        Args:
            database_uri: SQLAlchemy URL, e.g. ``sqlite:////path/history.db``
        """
        if database_uri.startswith('sqlite:///'):
            directory = os.path.dirname(database_uri[len('sqlite:///'):])
            if directory:
                os.makedirs(directory, exist_ok=True)

        self.engine = create_engine(database_uri)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def record(self, report, logs: List[str] = None) -> bool:
        """
        Store a finished run.

        Args:
            report: Finalized RunReport
            logs: Timestamped run log lines

        Returns:
            True if the row was written
        """
        archives = [entry for entry in report.sources if entry.packaged and entry.archive_name]
        entry = RunHistory(
            trigger=report.trigger,
            status=report.status.value,
            started_at=report.started_at,
            completed_at=report.completed_at,
            archives_count=len(archives),
            total_size_bytes=sum(item.size_bytes or 0 for item in archives),
            failure_reason=report.failure_reason,
            report_json=json.dumps(report.to_dict()),
            logs='\n'.join(logs or []),
        )

        session = self._session_factory()
        try:
            session.add(entry)
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to record run history: {e}")
            return False
        finally:
            session.close()

    def recent(self, limit: int = 10) -> List[RunHistory]:
        """Most recent runs first."""
        session = self._session_factory()
        try:
            return (
                session.query(RunHistory)
                .order_by(RunHistory.started_at.desc(), RunHistory.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            session.close()
