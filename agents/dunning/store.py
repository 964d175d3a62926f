"""SQLAlchemy Core persistence for the dunning engine.

``schools``, ``app_settings``, ``enrollments``, ``installments`` and
``wpp_notification_templates`` belong to other subsystems and are only
read here. ``dunning_steps``, ``dunning_logs`` and ``school_usage_trackers``
are owned by the engine (see the ``dunning_core`` migration).

Timestamps are written and compared as UTC.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Collection, Iterable, List, Mapping, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from backend.core.config import settings

from .config import SchoolProfile
from .dto import (
    DunningLog,
    DunningStep,
    EventType,
    Installment,
    InstallmentStatus,
    LogStatus,
    Template,
    UsageTracker,
)
from .errors import DuplicateSendError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DunningTables:
    schools: Table
    app_settings: Table
    enrollments: Table
    installments: Table
    templates: Table
    usage: Table
    steps: Table
    logs: Table


def tables(metadata: MetaData) -> DunningTables:
    schools = Table(
        "schools",
        metadata,
        Column("id", String, primary_key=True),
        Column("name", String),
        Column("active", Boolean, nullable=False, default=True),
        Column("config_modules", JSON),
        extend_existing=True,
    )
    app_settings = Table(
        "app_settings",
        metadata,
        Column("school_id", String, nullable=False),
        Column("key", String, nullable=False),
        Column("value", JSON),
        PrimaryKeyConstraint("school_id", "key"),
        extend_existing=True,
    )
    enrollments = Table(
        "enrollments",
        metadata,
        Column("id", String, primary_key=True),
        Column("school_id", String, nullable=False),
        Column("candidate_name", String),
        Column("details", JSON),
        extend_existing=True,
    )
    installments = Table(
        "installments",
        metadata,
        Column("id", String, primary_key=True),
        Column("school_id", String, nullable=False, index=True),
        Column("enrollment_id", String),
        Column("value", Numeric(12, 2), nullable=False),
        Column("due_date", Date, nullable=False),
        Column("status", String(16), nullable=False, default="pending"),
        Column("billing_url", Text),
        Column("created_at", DateTime(timezone=True), nullable=False),
        extend_existing=True,
    )
    templates = Table(
        "wpp_notification_templates",
        metadata,
        Column("key", String, primary_key=True),
        Column("title_template", Text),
        Column("message_template", Text),
        Column("variables_description", Text),
        extend_existing=True,
    )
    usage = Table(
        "school_usage_trackers",
        metadata,
        Column("school_id", String, primary_key=True),
        Column("messages_sent_count", Integer, nullable=False, default=0),
        Column("limit_messages", Integer, nullable=False, default=0),
        Column("current_period_start", Date),
        extend_existing=True,
    )
    steps = Table(
        "dunning_steps",
        metadata,
        Column("id", String, primary_key=True),
        Column("school_id", String, nullable=False, index=True),
        Column("day_offset", Integer, nullable=False, default=0),
        Column("event_type", String(16), nullable=False, default="DUE_DATE"),
        Column("template_key", String),
        Column("use_custom_message", Boolean, nullable=False, default=False),
        Column("custom_message", Text),
        Column("active", Boolean, nullable=False, default=True),
        Column("created_at", DateTime(timezone=True)),
        Column("updated_at", DateTime(timezone=True)),
        extend_existing=True,
    )
    logs = Table(
        "dunning_logs",
        metadata,
        Column("id", String, primary_key=True),
        Column("school_id", String, nullable=False, index=True),
        Column("installment_id", String, nullable=False),
        Column("step_id", String, nullable=False),
        Column("status", String(16), nullable=False),
        Column("error_message", Text),
        Column("metadata", JSON),
        Column("sent_at", DateTime(timezone=True), nullable=False),
        extend_existing=True,
    )
    Index("ix_dunning_logs_pair", logs.c.installment_id, logs.c.step_id)
    Index(
        "uq_dunning_logs_success_pair",
        logs.c.installment_id,
        logs.c.step_id,
        unique=True,
        sqlite_where=logs.c.status == LogStatus.SUCCESS.value,
        postgresql_where=logs.c.status == LogStatus.SUCCESS.value,
    )
    return DunningTables(schools, app_settings, enrollments, installments, templates, usage, steps, logs)


# Module-level schema for alembic autogenerate and create_all
_METADATA = MetaData()
TABLES = tables(_METADATA)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _step_from_row(row: Any) -> DunningStep:
    return DunningStep(
        id=row.id,
        school_id=row.school_id,
        day_offset=row.day_offset or 0,
        event_type=EventType(row.event_type),
        template_key=row.template_key,
        use_custom_message=bool(row.use_custom_message),
        custom_message=row.custom_message,
        active=bool(row.active),
    )


class SqlDunningStore:
    """Every dunning repository protocol on one SQLAlchemy engine."""

    def __init__(self, engine: Engine | None = None):
        self.engine = engine or create_engine(settings.database_url, future=True)
        self.t = TABLES

    def create_all(self) -> None:
        _METADATA.create_all(self.engine)

    # SchoolRepository

    def _profile(self, conn: Any, row: Any) -> SchoolProfile:
        app_settings = {
            s.key: s.value
            for s in conn.execute(
                select(self.t.app_settings.c.key, self.t.app_settings.c.value).where(
                    self.t.app_settings.c.school_id == row.id
                )
            )
        }
        return SchoolProfile.from_settings(
            school_id=row.id,
            name=row.name,
            active=row.active,
            config_modules=row.config_modules,
            app_settings=app_settings,
        )

    def list_schools(self) -> list[SchoolProfile]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(self.t.schools).order_by(self.t.schools.c.id)).fetchall()
            return [self._profile(conn, row) for row in rows]

    def get_school(self, school_id: str) -> Optional[SchoolProfile]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.t.schools).where(self.t.schools.c.id == school_id)
            ).first()
            return self._profile(conn, row) if row else None

    # StepRepository

    def list_steps(self, school_id: str, *, active_only: bool = False) -> list[DunningStep]:
        steps = self.t.steps
        query = select(steps).where(steps.c.school_id == school_id)
        if active_only:
            query = query.where(steps.c.active.is_(True))
        query = query.order_by(steps.c.event_type, steps.c.day_offset, steps.c.id)
        with self.engine.connect() as conn:
            return [_step_from_row(row) for row in conn.execute(query)]

    def save_steps(self, school_id: str, steps: Iterable[DunningStep]) -> list[DunningStep]:
        table = self.t.steps
        incoming = list(steps)
        keep = [s.id for s in incoming]
        now = datetime.now(UTC)

        with self.engine.begin() as conn:
            foreign = conn.execute(
                select(table.c.id).where(table.c.id.in_(keep)).where(table.c.school_id != school_id)
            ).first()
            if foreign is not None:
                raise ValueError(f"Step {foreign.id} belongs to another school")

            conn.execute(
                delete(table).where(table.c.school_id == school_id).where(table.c.id.not_in(keep))
            )
            for step in incoming:
                values = {
                    "day_offset": step.day_offset,
                    "event_type": step.event_type.value,
                    "template_key": step.template_key,
                    "use_custom_message": step.use_custom_message,
                    "custom_message": step.custom_message,
                    "active": step.active,
                    "updated_at": now,
                }
                upd = conn.execute(
                    update(table)
                    .where(table.c.id == step.id)
                    .where(table.c.school_id == school_id)
                    .values(**values)
                )
                if upd.rowcount == 0:
                    conn.execute(
                        insert(table).values(id=step.id, school_id=school_id, created_at=now, **values)
                    )
        return self.list_steps(school_id)

    # InstallmentRepository

    def list_installments(
        self,
        school_id: str,
        *,
        due_dates: Collection[date] = (),
        created_between: Optional[tuple[datetime, datetime]] = None,
        installment_ids: Optional[Collection[str]] = None,
    ) -> list[Installment]:
        inst = self.t.installments
        enr = self.t.enrollments

        conditions = []
        if due_dates:
            conditions.append(inst.c.due_date.in_(sorted(due_dates)))
        if created_between is not None:
            start, end = created_between
            conditions.append(and_(inst.c.created_at >= _utc(start), inst.c.created_at < _utc(end)))
        if not conditions:
            return []

        query = (
            select(
                inst.c.id,
                inst.c.school_id,
                inst.c.enrollment_id,
                inst.c.value,
                inst.c.due_date,
                inst.c.status,
                inst.c.billing_url,
                inst.c.created_at,
                enr.c.candidate_name,
                enr.c.details,
            )
            .select_from(inst.outerjoin(enr, enr.c.id == inst.c.enrollment_id))
            .where(inst.c.school_id == school_id)
            .where(inst.c.status != InstallmentStatus.CANCELLED.value)
            .where(or_(*conditions))
            .order_by(inst.c.id)
        )
        if installment_ids is not None:
            query = query.where(inst.c.id.in_(list(installment_ids)))

        result = []
        with self.engine.connect() as conn:
            for row in conn.execute(query):
                details = row.details if isinstance(row.details, dict) else {}
                result.append(
                    Installment(
                        id=row.id,
                        school_id=row.school_id,
                        enrollment_id=row.enrollment_id,
                        due_date=row.due_date,
                        created_at=_utc(row.created_at),
                        value=Decimal(str(row.value)),
                        status=InstallmentStatus(row.status),
                        billing_url=row.billing_url,
                        student_name=row.candidate_name,
                        guardian_name=details.get("parent_name"),
                        guardian_phone=details.get("parent_phone"),
                    )
                )
        return result

    def get_usage(self, school_id: str) -> Optional[UsageTracker]:
        usage = self.t.usage
        with self.engine.connect() as conn:
            row = conn.execute(select(usage).where(usage.c.school_id == school_id)).first()
        if row is None:
            return None
        return UsageTracker(
            school_id=row.school_id,
            messages_sent_count=row.messages_sent_count or 0,
            limit_messages=row.limit_messages or 0,
            current_period_start=row.current_period_start,
        )

    def reserve_usage(self, school_id: str) -> bool:
        usage = self.t.usage
        under_limit = or_(
            usage.c.limit_messages <= 0,
            usage.c.messages_sent_count < usage.c.limit_messages,
        )
        for _ in range(2):
            try:
                with self.engine.begin() as conn:
                    upd = conn.execute(
                        update(usage)
                        .where(usage.c.school_id == school_id)
                        .where(under_limit)
                        .values(messages_sent_count=usage.c.messages_sent_count + 1)
                    )
                    if upd.rowcount == 1:
                        return True
                    exists = conn.execute(
                        select(usage.c.school_id).where(usage.c.school_id == school_id)
                    ).first()
                    if exists is not None:
                        return False
                    conn.execute(
                        insert(usage).values(school_id=school_id, messages_sent_count=1, limit_messages=0)
                    )
                    return True
            except IntegrityError:
                # Concurrent first insert; the row exists now
                continue
        raise RuntimeError(f"Could not reserve usage for school {school_id}")

    def release_usage(self, school_id: str) -> None:
        usage = self.t.usage
        with self.engine.begin() as conn:
            conn.execute(
                update(usage)
                .where(usage.c.school_id == school_id)
                .where(usage.c.messages_sent_count > 0)
                .values(messages_sent_count=usage.c.messages_sent_count - 1)
            )

    # TemplateRepository

    def get_template(self, key: str) -> Optional[Template]:
        tpl = self.t.templates
        with self.engine.connect() as conn:
            row = conn.execute(select(tpl).where(tpl.c.key == key)).first()
        if row is None:
            return None
        return Template(
            key=row.key,
            title_template=row.title_template or "",
            message_template=row.message_template or "",
            variables_description=row.variables_description or "",
        )

    # LogRepository

    def append_log(
        self,
        *,
        school_id: str,
        installment_id: str,
        step_id: str,
        status: LogStatus,
        error_message: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> DunningLog:
        log = DunningLog(
            id=str(uuid.uuid4()),
            school_id=school_id,
            installment_id=installment_id,
            step_id=step_id,
            status=status,
            error_message=error_message,
            metadata=dict(metadata or {}),
            sent_at=datetime.now(UTC),
        )
        values = {
            "id": log.id,
            "school_id": school_id,
            "installment_id": installment_id,
            "step_id": step_id,
            "status": status.value,
            "error_message": error_message,
            "metadata": log.metadata,
            "sent_at": log.sent_at,
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(self.t.logs).values(values))
        except IntegrityError as exc:
            # Only the SUCCESS uniqueness is a duplicate; any other violation is a real failure
            if status == LogStatus.SUCCESS and self.find_logged_pairs(
                school_id, [installment_id], [step_id], LogStatus.SUCCESS
            ):
                raise DuplicateSendError(installment_id, step_id) from exc
            raise
        return log

    def find_logged_pairs(
        self,
        school_id: str,
        installment_ids: Collection[str],
        step_ids: Collection[str],
        status: LogStatus,
    ) -> set[tuple[str, str]]:
        if not installment_ids or not step_ids:
            return set()
        logs = self.t.logs
        query = (
            select(logs.c.installment_id, logs.c.step_id)
            .where(logs.c.school_id == school_id)
            .where(logs.c.status == status.value)
            .where(logs.c.installment_id.in_(list(installment_ids)))
            .where(logs.c.step_id.in_(list(step_ids)))
            .distinct()
        )
        with self.engine.connect() as conn:
            return {(row.installment_id, row.step_id) for row in conn.execute(query)}

    def list_logs(self, school_id: str, *, installment_id: Optional[str] = None) -> list[DunningLog]:
        logs = self.t.logs
        query = select(logs).where(logs.c.school_id == school_id)
        if installment_id is not None:
            query = query.where(logs.c.installment_id == installment_id)
        query = query.order_by(logs.c.sent_at, logs.c.id)
        with self.engine.connect() as conn:
            rows: List[Any] = conn.execute(query).fetchall()
        return [
            DunningLog(
                id=row.id,
                school_id=row.school_id,
                installment_id=row.installment_id,
                step_id=row.step_id,
                status=LogStatus(row.status),
                error_message=row.error_message,
                metadata=row._mapping["metadata"] or {},
                sent_at=_utc(row.sent_at) if row.sent_at else None,
            )
            for row in rows
        ]
