"""
Database models and operations for DockPilot
Uses SQLite for stacks, services, ignore rules and the last check verdict
"""

from datetime import datetime, timezone
from typing import Optional, List, Tuple
from sqlalchemy import create_engine, Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Text
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.pool import StaticPool
import os
import logging

from updates.ignore_rules import IgnoreKind, IgnoreRule
from updates.types import ArchMatch, Candidate, ServiceTarget, StackTarget

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class StackRecord(Base):
    """A compose project under management"""
    __tablename__ = "stacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    project_name = Column(String, nullable=True)  # compose -p; defaults to compose's own choice
    compose_files = Column(JSON, nullable=False, default=list)
    env_file = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    services = relationship("ServiceRecord", back_populates="stack", cascade="all, delete-orphan",
                            order_by="ServiceRecord.id")


class ServiceRecord(Base):
    """A compose service and its latest check verdict"""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_id = Column(Integer, ForeignKey("stacks.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    image = Column(Text, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    auto_rollback = Column(Boolean, default=True, nullable=False)

    # Verdict of the last check cycle (recomputed every cycle)
    current_digest = Column(Text, nullable=True)
    candidate_tag = Column(Text, nullable=True)
    candidate_digest = Column(Text, nullable=True)
    candidate_arch_match = Column(String, nullable=True)  # match|mismatch|unknown
    candidate_architectures = Column(JSON, nullable=True)
    ignore_rule_id = Column(Integer, nullable=True)
    ignore_reason = Column(Text, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)

    stack = relationship("StackRecord", back_populates="services")
    ignore_rules = relationship("IgnoreRuleRecord", back_populates="service", cascade="all, delete-orphan",
                                order_by="IgnoreRuleRecord.id")


class IgnoreRuleRecord(Base):
    """Operator-defined suppression of candidate tags for one service"""
    __tablename__ = "ignore_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    kind = Column(String, nullable=False)  # exact|prefix|regex|semver
    value = Column(Text, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    service = relationship("ServiceRecord", back_populates="ignore_rules")


def _to_service_target(record: ServiceRecord) -> ServiceTarget:
    candidate = None
    if record.candidate_tag:
        candidate = Candidate(
            tag=record.candidate_tag,
            digest=record.candidate_digest,
            arch_match=ArchMatch(record.candidate_arch_match or ArchMatch.UNKNOWN.value),
            architectures=list(record.candidate_architectures or []),
        )
    return ServiceTarget(
        id=record.id,
        name=record.name,
        image=record.image,
        archived=bool(record.archived),
        candidate=candidate,
        ignore_matched=record.ignore_rule_id is not None,
        auto_rollback=bool(record.auto_rollback),
    )


def _to_stack_target(record: StackRecord) -> StackTarget:
    return StackTarget(
        id=record.id,
        name=record.name,
        compose_files=list(record.compose_files or []),
        project_name=record.project_name,
        env_file=record.env_file,
        services=[_to_service_target(s) for s in record.services],
    )


class DatabaseManager:
    """
    Database management and operations.

    One instance per database URL; the application creates it once at
    startup and passes it to the components that need it.
    """

    def __init__(self, db_url: str):
        self.db_url = db_url

        if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
            data_dir = os.path.dirname(os.path.abspath(db_url[len("sqlite:///"):]))
            os.makedirs(data_dir, exist_ok=True)

        self.engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False, "timeout": 20} if db_url.startswith("sqlite") else {},
            poolclass=StaticPool if db_url.startswith("sqlite") else None,
            echo=False
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    # Stack / service bookkeeping

    def add_stack(self, name: str, compose_files: List[str], project_name: Optional[str] = None,
                  env_file: Optional[str] = None) -> int:
        with self.get_session() as session:
            stack = StackRecord(name=name, compose_files=list(compose_files),
                                project_name=project_name, env_file=env_file)
            session.add(stack)
            session.commit()
            logger.info(f"Added stack {name} (id {stack.id})")
            return stack.id

    def add_service(self, stack_id: int, name: str, image: str, archived: bool = False,
                    auto_rollback: bool = True) -> int:
        with self.get_session() as session:
            service = ServiceRecord(stack_id=stack_id, name=name, image=image,
                                    archived=archived, auto_rollback=auto_rollback)
            session.add(service)
            session.commit()
            return service.id

    def add_ignore_rule(self, service_id: int, kind: str, value: str, note: Optional[str] = None,
                        enabled: bool = True) -> int:
        kind = IgnoreKind(kind).value
        with self.get_session() as session:
            rule = IgnoreRuleRecord(service_id=service_id, kind=kind, value=value,
                                    note=note, enabled=enabled)
            session.add(rule)
            session.commit()
            return rule.id

    def list_stack_ids(self) -> List[int]:
        with self.get_session() as session:
            return [row.id for row in session.query(StackRecord.id).order_by(StackRecord.id)]

    def get_stack_target(self, stack_id: int) -> Optional[StackTarget]:
        with self.get_session() as session:
            stack = session.get(StackRecord, stack_id)
            return _to_stack_target(stack) if stack else None

    def list_stack_targets(self, stack_ids: Optional[List[int]] = None) -> List[StackTarget]:
        with self.get_session() as session:
            query = session.query(StackRecord)
            if stack_ids is not None:
                query = query.filter(StackRecord.id.in_(stack_ids))
            return [_to_stack_target(s) for s in query.order_by(StackRecord.id)]

    def get_service_stack_id(self, service_id: int) -> Optional[int]:
        with self.get_session() as session:
            service = session.get(ServiceRecord, service_id)
            return service.stack_id if service else None

    def list_ignore_rules(self, service_id: int) -> List[IgnoreRule]:
        """Enabled ignore rules of one service, oldest first"""
        with self.get_session() as session:
            records = (
                session.query(IgnoreRuleRecord)
                .filter(IgnoreRuleRecord.service_id == service_id, IgnoreRuleRecord.enabled == True)  # noqa: E712
                .order_by(IgnoreRuleRecord.id)
                .all()
            )
            return [
                IgnoreRule(id=r.id, service_id=r.service_id, kind=IgnoreKind(r.kind),
                           value=r.value, enabled=r.enabled, note=r.note)
                for r in records
            ]

    def store_check_result(
        self,
        service_id: int,
        candidate: Optional[Candidate],
        current_digest: Optional[str] = None,
        ignore_match: Optional[Tuple[int, str]] = None,
    ) -> None:
        """Replace the stored verdict of a service with a fresh one"""
        with self.get_session() as session:
            service = session.get(ServiceRecord, service_id)
            if service is None:
                logger.warning(f"Check result for unknown service {service_id} dropped")
                return

            service.current_digest = current_digest
            service.candidate_tag = candidate.tag if candidate else None
            service.candidate_digest = candidate.digest if candidate else None
            service.candidate_arch_match = candidate.arch_match.value if candidate else None
            service.candidate_architectures = list(candidate.architectures) if candidate else None
            service.ignore_rule_id = ignore_match[0] if ignore_match else None
            service.ignore_reason = ignore_match[1] if ignore_match else None
            service.last_checked_at = utcnow()
            session.commit()
