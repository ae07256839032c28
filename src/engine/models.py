# src/engine/models.py
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()


class Project(Base):
    __tablename__ = 'projects'
    id = Column(String(36), primary_key=True)
    name = Column(String, nullable=False)
    source = Column(String(16), nullable=False)  # upload | github
    repo_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    scans = relationship("Scan", back_populates="project")


class Scan(Base):
    __tablename__ = 'scans'
    id = Column(String(36), primary_key=True)
    project_id = Column(String(36), ForeignKey('projects.id'), nullable=False, index=True)
    status = Column(String(16), default='queued', index=True)
    tier = Column(String(16), default='fast')
    target = Column(Text, nullable=True)  # JSON string: upload name or repo url + branch
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    critical_count = Column(Integer, default=0)
    high_count = Column(Integer, default=0)
    medium_count = Column(Integer, default=0)
    low_count = Column(Integer, default=0)
    total_findings = Column(Integer, default=0)
    files_scanned = Column(Integer, default=0)
    risk_score = Column(Integer, nullable=True)
    grade = Column(String(2), nullable=True)
    error_message = Column(Text, nullable=True)
    report_json = Column(Text, nullable=True)  # JSON string of the scan report

    project = relationship("Project", back_populates="scans")
    findings = relationship("Finding", back_populates="scan", cascade="all, delete-orphan")


class Finding(Base):
    __tablename__ = 'findings'
    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String(36), ForeignKey('scans.id', ondelete='CASCADE'), nullable=False, index=True)
    rule_id = Column(String, nullable=False)
    severity = Column(String(16), nullable=False)
    category = Column(String(64), nullable=False)
    file_path = Column(String, nullable=False)
    start_line = Column(Integer, nullable=False)
    end_line = Column(Integer, nullable=False)
    message = Column(Text, nullable=False)
    code_snippet = Column(Text, nullable=True)
    cwe = Column(Text, nullable=True)  # JSON list
    owasp = Column(Text, nullable=True)  # JSON list
    confidence = Column(Integer, default=90)

    scan = relationship("Scan", back_populates="findings")
