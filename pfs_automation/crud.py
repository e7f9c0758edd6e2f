import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import and_, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import aliased
from .config import subtask_stage_policy
from .errors import ConflictError, NotFoundError, PFSError, StorageError, ValidationError
from .hierarchy import TaskForest
from .models import Client, Project, ProjectUser, SetupStatus, Stage, Task, User
from .schemas import (
    ClientCreate, ProjectCreate, ProjectUserCreate, SetupRequest, StageCreate, StageUpdate,
    SubtaskCreate, TaskCreate, TaskFilter, TaskUpdate, UserCreate, UserUpdate
)
from .utils import MIN_PASSWORD_LENGTH, clean_text, hash_password, normalize_email, utcnow

log = logging.getLogger(__name__)

REQUIRED_TASK_FIELDS = ("task_name", "sold_days", "status", "priority")


@asynccontextmanager
async def _transaction(db: AsyncSession, action: str, integrity_message: Optional[str] = None):
    """Commit on success, roll back and translate errors otherwise"""
    try:
        yield
        await db.commit()
    except PFSError:
        await db.rollback()
        raise
    except IntegrityError as e:
        await db.rollback()
        log.warning("Constraint violation while trying to %s: %s", action, e.orig)
        raise ValidationError(integrity_message or f"Could not {action}: constraint violation") from e
    except SQLAlchemyError as e:
        await db.rollback()
        log.exception("Storage failure while trying to %s", action)
        raise StorageError(f"Failed to {action}") from e


# Setup

async def get_setup_status(db: AsyncSession) -> Optional[SetupStatus]:
    result = await db.execute(select(SetupStatus).order_by(SetupStatus.id).limit(1))
    return result.scalar_one_or_none()


async def ensure_setup_status(db: AsyncSession) -> SetupStatus:
    """Insert the single setup row if it does not exist yet"""
    status = await get_setup_status(db)
    if status:
        return status

    status = SetupStatus(is_setup_complete=False)
    async with _transaction(db, "initialize setup status"):
        db.add(status)
    await db.refresh(status)
    return status


async def is_setup_complete(db: AsyncSession) -> bool:
    status = await get_setup_status(db)
    return bool(status and status.is_setup_complete)


async def complete_setup(db: AsyncSession, request: SetupRequest) -> User:
    """Create the first administrator and mark setup as complete"""
    result = await db.execute(
        select(SetupStatus).order_by(SetupStatus.id).limit(1).with_for_update()
    )
    status = result.scalar_one_or_none()
    if not status:
        raise StorageError("Setup status not initialized")
    if status.is_setup_complete:
        raise ValidationError("Setup already completed")
    _check_password(request.password)

    admin = User(
        email=normalize_email(request.email),
        username=request.username.strip(),
        password=hash_password(request.password),
        first_name=clean_text(request.first_name),
        last_name=clean_text(request.last_name),
        user_type="administrator",
        is_active=True,
    )
    async with _transaction(db, "complete setup", "Email or username already exists"):
        db.add(admin)
        status.is_setup_complete = True
        status.setup_completed_at = utcnow()
        status.updated_at = utcnow()

    await db.refresh(admin)
    log.info("Setup completed, administrator %s created", admin.username)
    return admin


# Users

def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def get_users(
    db: AsyncSession,
    user_type: Optional[str] = None,
    active_only: bool = False,
    skip: int = 0,
    limit: int = 100,
) -> List[User]:
    conditions = []
    if user_type:
        conditions.append(User.user_type == user_type)
    if active_only:
        conditions.append(User.is_active.is_(True))

    query = select(User).order_by(User.username, User.id).offset(skip).limit(limit)
    if conditions:
        query = query.filter(and_(*conditions))
    result = await db.execute(query)
    return result.scalars().all()


async def create_user(db: AsyncSession, user: UserCreate) -> User:
    _check_password(user.password)
    db_user = User(
        email=normalize_email(user.email),
        username=user.username.strip(),
        password=hash_password(user.password),
        first_name=clean_text(user.first_name),
        last_name=clean_text(user.last_name),
        user_type=user.user_type,
        preferred_language=user.preferred_language,
        is_active=True,
    )
    async with _transaction(db, "create user", "Email or username already exists"):
        db.add(db_user)
    await db.refresh(db_user)
    log.info("Created user %d (%s, %s)", db_user.id, db_user.username, db_user.user_type)
    return db_user


async def _active_administrators(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(User.id)).filter(
            User.user_type == "administrator", User.is_active.is_(True)
        )
    )
    return result.scalar()


async def update_user(db: AsyncSession, user_id: int, user_update: UserUpdate) -> User:
    db_user = await get_user(db, user_id)
    update_data = user_update.model_dump(exclude_unset=True)

    for field in ("email", "username", "user_type", "preferred_language", "is_active"):
        if field in update_data and update_data[field] is None:
            raise ValidationError(f"{field} cannot be null")

    if update_data.get("password") is not None:
        _check_password(update_data["password"])
        update_data["password"] = hash_password(update_data["password"])
    else:
        update_data.pop("password", None)

    if "email" in update_data:
        update_data["email"] = normalize_email(update_data["email"])
    if "username" in update_data:
        update_data["username"] = update_data["username"].strip()
    for field in ("first_name", "last_name"):
        if field in update_data:
            update_data[field] = clean_text(update_data[field])

    demoted = update_data.get("user_type", db_user.user_type) != "administrator"
    deactivated = update_data.get("is_active", db_user.is_active) is False
    if db_user.user_type == "administrator" and db_user.is_active and (demoted or deactivated):
        if await _active_administrators(db) <= 1:
            raise ConflictError("The last active administrator cannot be demoted or deactivated")

    if update_data:
        update_data["updated_at"] = utcnow()
        async with _transaction(db, "update user", "Email or username already exists"):
            for field, value in update_data.items():
                setattr(db_user, field, value)
        await db.refresh(db_user)
        log.info("Updated user %d: %s", user_id, ", ".join(sorted(update_data)))

    return db_user


async def delete_user(db: AsyncSession, user_id: int) -> None:
    db_user = await get_user(db, user_id)
    if db_user.user_type == "administrator" and db_user.is_active and await _active_administrators(db) <= 1:
        raise ConflictError("The last active administrator cannot be deleted")

    managed = await db.execute(
        select(func.count(Project.id)).filter(Project.project_manager_id == user_id)
    )
    assigned = await db.execute(
        select(func.count(ProjectUser.id)).filter(ProjectUser.user_id == user_id)
    )
    if managed.scalar() or assigned.scalar():
        raise ConflictError(f"User {user_id} is still managing or assigned to projects")

    async with _transaction(db, "delete user"):
        await db.delete(db_user)
    log.info("Deleted user %d", user_id)


# Clients and projects

async def create_client(db: AsyncSession, client: ClientCreate) -> Client:
    db_client = Client(**client.model_dump())
    async with _transaction(db, "create client"):
        db.add(db_client)
    await db.refresh(db_client)
    return db_client


async def get_clients(db: AsyncSession, skip: int = 0, limit: int = 100) -> List[Client]:
    result = await db.execute(
        select(Client).order_by(Client.client_name, Client.id).offset(skip).limit(limit)
    )
    return result.scalars().all()


async def get_project(db: AsyncSession, project_id: int) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise NotFoundError(f"Project {project_id} not found")
    return project


async def get_projects(db: AsyncSession, skip: int = 0, limit: int = 100) -> List[Project]:
    result = await db.execute(
        select(Project).order_by(Project.created_at.desc(), Project.id.desc()).offset(skip).limit(limit)
    )
    return result.scalars().all()


async def create_project(db: AsyncSession, project: ProjectCreate) -> Project:
    if project.client_id is not None and not await db.get(Client, project.client_id):
        raise NotFoundError(f"Client {project.client_id} not found")
    if project.project_manager_id is not None:
        await get_user(db, project.project_manager_id)

    data = project.model_dump()
    if data["budget"] is not None:
        data["budget"] = Decimal(str(data["budget"]))
    db_project = Project(**data)
    async with _transaction(db, "create project"):
        db.add(db_project)
    await db.refresh(db_project)
    log.info("Created project %d (%s)", db_project.id, db_project.project_name)
    return db_project


async def get_project_users(db: AsyncSession, project_id: int) -> List[ProjectUser]:
    await get_project(db, project_id)
    result = await db.execute(
        select(ProjectUser).filter(ProjectUser.project_id == project_id).order_by(ProjectUser.id)
    )
    return result.scalars().all()


async def assign_project_user(db: AsyncSession, project_id: int, assignment: ProjectUserCreate) -> ProjectUser:
    await get_project(db, project_id)
    await get_user(db, assignment.user_id)

    existing = await db.execute(
        select(ProjectUser).filter(
            ProjectUser.project_id == project_id, ProjectUser.user_id == assignment.user_id
        )
    )
    if existing.scalar_one_or_none():
        raise ConflictError(f"User {assignment.user_id} is already assigned to project {project_id}")

    db_assignment = ProjectUser(
        project_id=project_id,
        user_id=assignment.user_id,
        role=clean_text(assignment.role),
    )
    async with _transaction(db, "assign user to project"):
        db.add(db_assignment)
    await db.refresh(db_assignment)
    log.info("Assigned user %d to project %d", assignment.user_id, project_id)
    return db_assignment


async def unassign_project_user(db: AsyncSession, project_id: int, user_id: int) -> None:
    result = await db.execute(
        select(ProjectUser).filter(ProjectUser.project_id == project_id, ProjectUser.user_id == user_id)
    )
    assignment = result.scalar_one_or_none()
    if not assignment:
        raise NotFoundError(f"User {user_id} is not assigned to project {project_id}")

    async with _transaction(db, "remove user from project"):
        await db.delete(assignment)
    log.info("Removed user %d from project %d", user_id, project_id)


# Stages

async def get_stage(db: AsyncSession, stage_id: int) -> Stage:
    stage = await db.get(Stage, stage_id)
    if not stage:
        raise NotFoundError(f"Stage {stage_id} not found")
    return stage


async def get_stages(db: AsyncSession, project_id: int) -> List[Stage]:
    result = await db.execute(
        select(Stage).filter(Stage.project_id == project_id).order_by(Stage.stage_order, Stage.id)
    )
    return result.scalars().all()


async def create_stage(db: AsyncSession, project_id: int, stage: StageCreate) -> Stage:
    await get_project(db, project_id)
    result = await db.execute(
        select(func.max(Stage.stage_order)).filter(Stage.project_id == project_id)
    )
    last_order = result.scalar()
    db_stage = Stage(
        project_id=project_id,
        stage_order=0 if last_order is None else last_order + 1,
        **stage.model_dump(),
    )
    async with _transaction(db, "create stage"):
        db.add(db_stage)
    await db.refresh(db_stage)
    return db_stage


async def update_stage(db: AsyncSession, stage_id: int, stage_update: StageUpdate) -> Stage:
    db_stage = await get_stage(db, stage_id)
    update_data = stage_update.model_dump(exclude_unset=True)

    for field in ("stage_name", "is_completed"):
        if field in update_data and update_data[field] is None:
            raise ValidationError(f"{field} cannot be null")

    if update_data:
        update_data["updated_at"] = utcnow()
        async with _transaction(db, "update stage"):
            for field, value in update_data.items():
                setattr(db_stage, field, value)
        await db.refresh(db_stage)
        log.info("Updated stage %d: %s", stage_id, ", ".join(sorted(update_data)))

    return db_stage


async def delete_stage(db: AsyncSession, stage_id: int) -> None:
    """Delete an empty stage; tasks keep a restricting reference to it"""
    db_stage = await get_stage(db, stage_id)
    result = await db.execute(select(func.count(Task.id)).filter(Task.stage_id == stage_id))
    task_count = result.scalar()
    if task_count:
        raise ConflictError(f"Stage {stage_id} still holds {task_count} task(s)")

    async with _transaction(db, "delete stage"):
        await db.delete(db_stage)
    log.info("Deleted stage %d of project %d", stage_id, db_stage.project_id)


async def reorder_stages(db: AsyncSession, project_id: int, stage_ids: List[int]) -> List[int]:
    await get_project(db, project_id)
    stages = await get_stages(db, project_id)
    ordered = _apply_order(stages, stage_ids, scope=f"project {project_id}", kind="stage")

    async with _transaction(db, "reorder stages"):
        # Park every stage on a negative slot first so (project_id, stage_order)
        # stays unique between the two flushes.
        for position, stage in enumerate(ordered):
            stage.stage_order = -(position + 1)
        await db.flush()
        for position, stage in enumerate(ordered):
            stage.stage_order = position
            stage.updated_at = utcnow()

    log.info("Reordered %d stages of project %d", len(ordered), project_id)
    return [stage.id for stage in ordered]


# Task hierarchy snapshots

async def load_project_forest(db: AsyncSession, project_id: int) -> TaskForest:
    """All tasks of one project, read with a single statement"""
    result = await db.execute(select(Task).filter(Task.project_id == project_id))
    return TaskForest(result.scalars().all())


async def load_task_forest(db: AsyncSession, task_id: int) -> TaskForest:
    """The forest of the project owning ``task_id``, read with a single statement"""
    owner = aliased(Task)
    owning_project = select(owner.project_id).filter(owner.id == task_id).scalar_subquery()
    result = await db.execute(select(Task).filter(Task.project_id == owning_project))
    forest = TaskForest(result.scalars().all())
    forest.get(task_id)
    return forest


# Tasks

async def get_task(db: AsyncSession, task_id: int) -> Task:
    """Get a task by ID"""
    result = await db.execute(select(Task).filter(Task.id == task_id))
    task = result.scalar_one_or_none()
    if not task:
        raise NotFoundError(f"Task {task_id} not found")
    return task


async def get_tasks(
    db: AsyncSession,
    project_id: int,
    task_filter: Optional[TaskFilter] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Task]:
    """Get the tasks of a project with optional filtering"""
    conditions = [Task.project_id == project_id]

    if task_filter:
        if task_filter.status:
            conditions.append(Task.status == task_filter.status)

        if task_filter.priority:
            conditions.append(Task.priority == task_filter.priority)

        if task_filter.stage_id is not None:
            conditions.append(Task.stage_id == task_filter.stage_id)

        if task_filter.main_only:
            conditions.append(Task.parent_task_id.is_(None))

        if task_filter.due_before:
            conditions.append(Task.due_date <= task_filter.due_before)

        if task_filter.due_after:
            conditions.append(Task.due_date >= task_filter.due_after)

    query = (
        select(Task)
        .filter(and_(*conditions))
        .order_by(Task.display_order, Task.id)
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


def _scope_conditions(project_id: int, stage_id: Optional[int], parent_task_id: Optional[int]) -> list:
    """Filter selecting the siblings a task is ordered among"""
    if parent_task_id is not None:
        return [Task.parent_task_id == parent_task_id]
    if stage_id is not None:
        return [Task.parent_task_id.is_(None), Task.stage_id == stage_id]
    return [Task.project_id == project_id, Task.parent_task_id.is_(None), Task.stage_id.is_(None)]


async def _next_display_order(db: AsyncSession, conditions: list) -> int:
    result = await db.execute(select(func.max(Task.display_order)).filter(and_(*conditions)))
    last = result.scalar()
    return 0 if last is None else last + 1


async def _validate_stage(db: AsyncSession, stage_id: int, project_id: int) -> Stage:
    stage = await get_stage(db, stage_id)
    if stage.project_id != project_id:
        raise ValidationError(f"Stage {stage_id} does not belong to project {project_id}")
    return stage


async def _validate_parent(db: AsyncSession, parent_task_id: int, project_id: int) -> Task:
    result = await db.execute(select(Task).filter(Task.id == parent_task_id))
    parent = result.scalar_one_or_none()
    if not parent:
        raise NotFoundError(f"Parent task {parent_task_id} not found")
    if parent.project_id != project_id:
        raise ValidationError(f"Parent task {parent_task_id} belongs to another project")
    return parent


async def create_task(db: AsyncSession, project_id: int, task: TaskCreate) -> Task:
    """Create a task (or a subtask when parent_task_id is set) at the end of its scope"""
    await get_project(db, project_id)
    data = task.model_dump()

    if data["stage_id"] is not None:
        await _validate_stage(db, data["stage_id"], project_id)

    if data["responsible_id"] is not None:
        await get_user(db, data["responsible_id"])

    if data["parent_task_id"] is not None:
        await _validate_parent(db, data["parent_task_id"], project_id)
        if subtask_stage_policy() == "copy":
            forest = await load_project_forest(db, project_id)
            data["stage_id"] = forest.effective_stage_id(data["parent_task_id"])

    if data["status"] == "done":
        data["completed_at"] = utcnow()

    data["display_order"] = await _next_display_order(
        db, _scope_conditions(project_id, data["stage_id"], data["parent_task_id"])
    )
    db_task = Task(project_id=project_id, **data)

    async with _transaction(db, "create task"):
        db.add(db_task)
    await db.refresh(db_task)
    log.info("Created task %d in project %d (parent=%s)", db_task.id, project_id, db_task.parent_task_id)
    return db_task


async def create_subtask(db: AsyncSession, parent_task_id: int, subtask: SubtaskCreate) -> Task:
    parent = await get_task(db, parent_task_id)
    task = TaskCreate(parent_task_id=parent.id, **subtask.model_dump())
    return await create_task(db, parent.project_id, task)


async def update_task(db: AsyncSession, task_id: int, task_update: TaskUpdate) -> Task:
    """Apply a partial update; moving between scopes appends to the new scope"""
    db_task = await get_task(db, task_id)
    update_data = task_update.model_dump(exclude_unset=True)

    for field in REQUIRED_TASK_FIELDS:
        if field in update_data and update_data[field] is None:
            raise ValidationError(f"{field} cannot be null")

    new_parent = update_data.get("parent_task_id", db_task.parent_task_id)
    new_stage = update_data.get("stage_id", db_task.stage_id)

    if new_stage is not None and new_stage != db_task.stage_id:
        await _validate_stage(db, new_stage, db_task.project_id)

    new_responsible = update_data.get("responsible_id")
    if new_responsible is not None and new_responsible != db_task.responsible_id:
        await get_user(db, new_responsible)

    if new_parent is not None and new_parent != db_task.parent_task_id:
        await _validate_parent(db, new_parent, db_task.project_id)
        forest = await load_task_forest(db, task_id)
        if new_parent in forest.subtree_ids(task_id):
            raise ValidationError(f"Task {task_id} cannot be moved under its own subtree")
        if subtask_stage_policy() == "copy" and "stage_id" not in update_data:
            new_stage = forest.effective_stage_id(new_parent)
            update_data["stage_id"] = new_stage

    if new_parent != db_task.parent_task_id or (new_parent is None and new_stage != db_task.stage_id):
        update_data["display_order"] = await _next_display_order(
            db, _scope_conditions(db_task.project_id, new_stage, new_parent)
        )

    if "status" in update_data and update_data["status"] != db_task.status:
        if update_data["status"] == "done":
            update_data["completed_at"] = utcnow()
        elif db_task.status == "done":
            update_data["completed_at"] = None

    if update_data:
        update_data["updated_at"] = utcnow()
        async with _transaction(db, "update task"):
            for field, value in update_data.items():
                setattr(db_task, field, value)
        await db.refresh(db_task)
        log.info("Updated task %d: %s", task_id, ", ".join(sorted(update_data)))

    return db_task


async def delete_task(db: AsyncSession, task_id: int) -> List[int]:
    """Delete a task together with every descendant, atomically"""
    forest = await load_task_forest(db, task_id)
    doomed = sorted(forest.subtree_ids(task_id))

    async with _transaction(db, "delete task"):
        await db.execute(delete(Task).where(Task.id.in_(doomed)))

    log.info("Deleted task %d and %d descendant(s)", task_id, len(doomed) - 1)
    return doomed


# Ordering

def _apply_order(members: list, ids: List[int], scope: str, kind: str) -> list:
    """Listed ids first in the given order, remaining members after them"""
    if len(set(ids)) != len(ids):
        raise ValidationError(f"Duplicate {kind} ids in reorder request")

    by_id = {member.id: member for member in members}
    outside = [i for i in ids if i not in by_id]
    if outside:
        raise ConflictError(
            f"{kind.capitalize()} ids {outside} do not belong to {scope}"
        )

    listed = set(ids)
    return [by_id[i] for i in ids] + [m for m in members if m.id not in listed]


async def _reorder_scope(db: AsyncSession, conditions: list, task_ids: List[int], scope: str) -> List[int]:
    result = await db.execute(
        select(Task).filter(and_(*conditions)).order_by(Task.display_order, Task.id)
    )
    ordered = _apply_order(result.scalars().all(), task_ids, scope=scope, kind="task")

    async with _transaction(db, f"reorder tasks of {scope}"):
        for position, task in enumerate(ordered):
            if task.display_order != position:
                task.display_order = position
                task.updated_at = utcnow()

    log.info("Reordered %d task(s) of %s", len(ordered), scope)
    return [task.id for task in ordered]


async def reorder_subtasks(db: AsyncSession, parent_task_id: int, task_ids: List[int]) -> List[int]:
    parent = await get_task(db, parent_task_id)
    return await _reorder_scope(
        db, _scope_conditions(parent.project_id, None, parent.id), task_ids, f"task {parent.id}"
    )


async def reorder_stage_tasks(db: AsyncSession, stage_id: int, task_ids: List[int]) -> List[int]:
    stage = await get_stage(db, stage_id)
    return await _reorder_scope(
        db, _scope_conditions(stage.project_id, stage.id, None), task_ids, f"stage {stage.id}"
    )


async def reorder_unstaged_tasks(db: AsyncSession, project_id: int, task_ids: List[int]) -> List[int]:
    await get_project(db, project_id)
    return await _reorder_scope(
        db, _scope_conditions(project_id, None, None), task_ids, f"project {project_id} (no stage)"
    )


# Read models

def ancestor_rows(forest: TaskForest, task_id: int) -> List[Dict[str, Any]]:
    return [
        {
            "id": task.id,
            "task_name": task.task_name,
            "parent_task_id": task.parent_task_id,
            "stage_id": task.stage_id,
            "level": level,
        }
        for level, task in enumerate(forest.ancestors(task_id), start=1)
    ]


async def get_project_plan(db: AsyncSession, project_id: int) -> Dict[str, Any]:
    """Stages with their task trees, as the Gantt view consumes them"""
    project = await get_project(db, project_id)
    stages = await get_stages(db, project_id)
    forest = await load_project_forest(db, project_id)

    trees_by_stage: Dict[Optional[int], list] = {stage.id: [] for stage in stages}
    unstaged = []
    for task in forest.main_tasks():
        tree = forest.tree(task.id)
        if task.stage_id in trees_by_stage:
            trees_by_stage[task.stage_id].append(tree)
        else:
            unstaged.append(tree)

    stage_plans = []
    for stage in stages:
        trees = trees_by_stage[stage.id]
        stage_plans.append({
            "id": stage.id,
            "project_id": stage.project_id,
            "stage_name": stage.stage_name,
            "stage_order": stage.stage_order,
            "description": stage.description,
            "start_date": stage.start_date,
            "end_date": stage.end_date,
            "is_completed": stage.is_completed,
            "task_count": len(trees),
            "completed_task_count": sum(1 for tree in trees if tree["status"] == "done"),
            "tasks": trees,
        })

    return {"project": project, "stages": stage_plans, "unstaged_tasks": unstaged}
