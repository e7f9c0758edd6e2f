from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Boolean, Numeric,
    ForeignKey, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

TASK_STATUSES = ("todo", "in_progress", "review", "blocked", "done")
TASK_PRIORITIES = ("low", "medium", "high", "urgent")
PROJECT_STATUSES = ("created", "in_progress", "frozen", "closed")
USER_TYPES = ("administrator", "project_manager", "actor")
LANGUAGES = ("en", "fr", "es", "de")


def _in(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(255), unique=True, nullable=False)
    password = Column(String(255), nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    user_type = Column(String(50), nullable=False, default="actor", index=True)
    preferred_language = Column(String(10), default="en")
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(_in("user_type", USER_TYPES), name="check_user_type"),
        CheckConstraint(_in("preferred_language", LANGUAGES), name="check_preferred_language"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', user_type='{self.user_type}')>"


class SetupStatus(Base):
    __tablename__ = "setup_statuses"

    id = Column(Integer, primary_key=True)
    is_setup_complete = Column(Boolean, nullable=False, default=False)
    setup_completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    client_name = Column(String(255), nullable=False, index=True)
    contact_first_name = Column(String(255), nullable=True)
    contact_last_name = Column(String(255), nullable=True)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String(255), nullable=True)
    country = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    project_name = Column(String(255), nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=True, index=True)
    project_manager_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True)
    country = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False, default="created", index=True)
    start_date = Column(Date, nullable=True, index=True)
    end_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    budget = Column(Numeric(15, 2), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(_in("status", PROJECT_STATUSES), name="check_project_status"),
    )

    def __repr__(self):
        return f"<Project(id={self.id}, project_name='{self.project_name}')>"


class ProjectUser(Base):
    __tablename__ = "project_users"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    role = Column(String(100), nullable=True)
    assigned_at = Column(DateTime, server_default=func.now(), nullable=False)
    assigned_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_user"),
    )


class Stage(Base):
    __tablename__ = "stages"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False, index=True)
    stage_name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False, default=0)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "stage_order", name="uq_stage_project_order"),
        Index("idx_stages_stage_order", "project_id", "stage_order"),
    )

    def __repr__(self):
        return f"<Stage(id={self.id}, stage_name='{self.stage_name}', stage_order={self.stage_order})>"


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    parent_task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True)
    stage_id = Column(Integer, ForeignKey("stages.id", ondelete="RESTRICT"), nullable=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False, index=True)
    task_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    sold_days = Column(Numeric(10, 2), nullable=False, default=0)
    responsible_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    priority = Column(String(50), default="medium", index=True)
    status = Column(String(50), default="todo", index=True)
    display_order = Column(Integer, nullable=False, default=0)
    start_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        CheckConstraint(_in("priority", TASK_PRIORITIES), name="check_task_priority"),
        CheckConstraint(_in("status", TASK_STATUSES), name="check_task_status"),
        CheckConstraint("sold_days >= 0", name="check_sold_days"),
    )

    def __repr__(self):
        return f"<Task(id={self.id}, task_name='{self.task_name}', status='{self.status}')>"
