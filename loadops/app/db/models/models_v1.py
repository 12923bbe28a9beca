from __future__ import annotations

import uuid
from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    Uuid,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loadops.app.db.base import Base
from loadops.app.db.models.core_types import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- OWNERSHIP (alimenté par les sagas de provisioning) ----------
class Warehouse(Base):
    __tablename__ = "armazens"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    nome: Mapped[str] = mapped_column(String(200), nullable=False)
    cidade: Mapped[str | None] = mapped_column(String(128))
    estado: Mapped[str | None] = mapped_column(String(2))
    # lien 1:1 vers l'identité externe
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, unique=True)
    ativo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Customer(Base):
    __tablename__ = "clientes"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    nome: Mapped[str] = mapped_column(String(255), nullable=False)
    cnpj_cpf: Mapped[str | None] = mapped_column(String(32))
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, unique=True)
    ativo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# ---------- AUTH ----------
class UserRole(Base):
    __tablename__ = "user_roles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    role: Mapped[Role] = mapped_column(Enum(Role, name="user_role"), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role: Mapped[Role] = mapped_column(Enum(Role, name="user_role"), nullable=False)
    resource: Mapped[str] = mapped_column(String(64), nullable=False)
    can_create: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_update: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (UniqueConstraint("role", "resource", name="uq_role_permissions_role_resource"),)


# ---------- SCHEDULING (externe, lecture seule ici) ----------
class ScheduleEntry(Base):
    __tablename__ = "agendamentos"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    cliente_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("clientes.id", ondelete="RESTRICT"), nullable=False)
    armazem_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("armazens.id", ondelete="RESTRICT"), nullable=False)
    data_retirada: Mapped[date] = mapped_column(Date, nullable=False)
    quantidade: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    placa_caminhao: Mapped[str] = mapped_column(String(16), nullable=False)
    motorista_nome: Mapped[str] = mapped_column(String(200), nullable=False)
    motorista_documento: Mapped[str | None] = mapped_column(String(32))
    pedido_interno: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    cliente: Mapped[Customer] = relationship()
    armazem: Mapped[Warehouse] = relationship()

    __table_args__ = (CheckConstraint("quantidade > 0", name="ck_agendamento_quantidade_pos"),)


# ---------- LOADING LIFECYCLE ----------
class LoadingRecord(Base):
    __tablename__ = "carregamentos"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("agendamentos.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    # copiés depuis l'agendamento à la création, jamais modifiés ensuite
    cliente_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("clientes.id", ondelete="RESTRICT"), nullable=False, index=True)
    armazem_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("armazens.id", ondelete="RESTRICT"), nullable=False, index=True)

    current_stage: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    invoice_number: Mapped[str | None] = mapped_column(String(64))
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    schedule: Mapped[ScheduleEntry] = relationship()
    stages: Mapped[list["LoadingStage"]] = relationship(
        back_populates="loading",
        cascade="all, delete-orphan",
        order_by="LoadingStage.stage_id",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("current_stage >= 1 AND current_stage <= 6", name="ck_carregamento_stage_1_6"),
    )

    def stage_data(self, stage_id: int) -> "LoadingStage | None":
        for row in self.stages:
            if row.stage_id == stage_id:
                return row
        return None

    def completed_at(self, stage_id: int) -> datetime | None:
        row = self.stage_data(stage_id)
        return row.completed_at if row else None

    @property
    def is_terminal(self) -> bool:
        return self.current_stage >= 6


class LoadingStage(Base):
    __tablename__ = "carregamento_etapas"
    loading_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("carregamentos.id", ondelete="CASCADE"),
        primary_key=True,
    )
    stage_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    observation: Mapped[str | None] = mapped_column(Text)
    primary_artifact_url: Mapped[str | None] = mapped_column(Text)
    secondary_artifact_url: Mapped[str | None] = mapped_column(Text)

    loading: Mapped[LoadingRecord] = relationship(back_populates="stages")

    __table_args__ = (
        CheckConstraint("stage_id >= 1 AND stage_id <= 5", name="ck_carregamento_etapa_1_5"),
        Index("ix_carregamento_etapas_completed", "stage_id", "completed_at"),
    )

    @property
    def artifact_urls(self) -> list[str]:
        return [u for u in (self.primary_artifact_url, self.secondary_artifact_url) if u]
