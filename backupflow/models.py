from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RunHistory(Base):
    """Backup run history and logs"""
    __tablename__ = 'run_history'

    id = Column(Integer, primary_key=True)
    trigger = Column(String(20), nullable=False)  # manual, auto, scheduled
    status = Column(String(20), nullable=False)  # success, partial_success, failure
    started_at = Column(DateTime, default=datetime.now, nullable=False)
    completed_at = Column(DateTime)
    archives_count = Column(Integer, default=0, nullable=False)
    total_size_bytes = Column(Integer, default=0, nullable=False)
    failure_reason = Column(Text)
    report_json = Column(Text)  # RunReport.to_dict() as JSON
    logs = Column(Text)  # Detailed execution logs

    def __repr__(self):
        return f'<RunHistory id={self.id} status={self.status}>'
