from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

STATUS_PATTERN = "^(todo|in_progress|review|blocked|done)$"
PRIORITY_PATTERN = "^(low|medium|high|urgent)$"
PROJECT_STATUS_PATTERN = "^(created|in_progress|frozen|closed)$"
USER_TYPE_PATTERN = "^(administrator|project_manager|actor)$"
LANGUAGE_PATTERN = "^(en|fr|es|de)$"


# Task schemas
class TaskBase(BaseModel):
    task_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    sold_days: Decimal = Field(default=0, ge=0, max_digits=10, decimal_places=2)
    status: str = Field(default="todo", pattern=STATUS_PATTERN)
    priority: str = Field(default="medium", pattern=PRIORITY_PATTERN)
    responsible_id: Optional[int] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None


class SubtaskCreate(TaskBase):
    stage_id: Optional[int] = None


class TaskCreate(SubtaskCreate):
    parent_task_id: Optional[int] = None


class TaskUpdate(BaseModel):
    task_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    sold_days: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    status: Optional[str] = Field(None, pattern=STATUS_PATTERN)
    priority: Optional[str] = Field(None, pattern=PRIORITY_PATTERN)
    responsible_id: Optional[int] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    stage_id: Optional[int] = None
    parent_task_id: Optional[int] = None


class TaskResponse(TaskBase):
    id: int
    sold_days: float
    project_id: int
    stage_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    display_order: int
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TaskFilter(BaseModel):
    status: Optional[str] = Field(None, pattern=STATUS_PATTERN)
    priority: Optional[str] = Field(None, pattern=PRIORITY_PATTERN)
    stage_id: Optional[int] = None
    main_only: bool = False
    due_before: Optional[date] = None
    due_after: Optional[date] = None


class TaskTree(TaskResponse):
    total_sold_days: float
    range_start: Optional[date] = None
    range_end: Optional[date] = None
    subtasks: List["TaskTree"] = []


TaskTree.model_rebuild()


class HierarchyNodeResponse(BaseModel):
    id: int
    parent_task_id: Optional[int] = None
    task_name: str
    level: int
    path: str

    class Config:
        from_attributes = True


class AncestorResponse(BaseModel):
    id: int
    task_name: str
    parent_task_id: Optional[int] = None
    stage_id: Optional[int] = None
    level: int


class TaskStats(BaseModel):
    id: int
    task_name: str
    project_id: int
    stage_id: Optional[int] = None
    effective_stage_id: Optional[int] = None
    status: str
    priority: str
    own_sold_days: float
    total_sold_days: float
    subtask_count: int
    total_subtasks: int
    completed_subtasks: int
    completion_percentage: Optional[float] = None
    is_complete_with_subtasks: bool


class TaskDeleteResponse(BaseModel):
    message: str
    deleted_ids: List[int]


class ReorderRequest(BaseModel):
    ids: List[int]


class ReorderResponse(BaseModel):
    message: str
    ids: List[int]


# Stage schemas
class StageCreate(BaseModel):
    stage_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class StageUpdate(BaseModel):
    stage_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_completed: Optional[bool] = None


class StageResponse(StageCreate):
    id: int
    project_id: int
    stage_order: int
    is_completed: bool

    class Config:
        from_attributes = True


class StagePlan(StageResponse):
    task_count: int
    completed_task_count: int
    tasks: List[TaskTree]


# Project and client schemas
class ClientCreate(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=255)
    contact_first_name: Optional[str] = None
    contact_last_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)


class ClientResponse(ClientCreate):
    id: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ProjectCreate(BaseModel):
    project_name: str = Field(..., min_length=1, max_length=255)
    client_id: Optional[int] = None
    project_manager_id: Optional[int] = None
    country: Optional[str] = Field(None, max_length=100)
    status: str = Field(default="created", pattern=PROJECT_STATUS_PATTERN)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    description: Optional[str] = None
    budget: Optional[float] = Field(None, ge=0)


class ProjectResponse(ProjectCreate):
    id: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProjectUserCreate(BaseModel):
    user_id: int
    role: Optional[str] = Field(None, max_length=100)


class ProjectUserResponse(ProjectUserCreate):
    id: int
    project_id: int
    assigned_at: datetime

    class Config:
        from_attributes = True


class ProjectPlan(BaseModel):
    project: ProjectResponse
    stages: List[StagePlan]
    unstaged_tasks: List[TaskTree]


# Setup schemas
class SetupStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_setup_complete: bool = Field(alias="isSetupComplete")
    setup_completed_at: Optional[datetime] = Field(None, alias="setupCompletedAt")


class SetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=3, max_length=255)
    username: str = Field(..., min_length=1, max_length=255)
    password: str
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")


class MessageResponse(BaseModel):
    message: str


# User schemas
class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    username: str = Field(..., min_length=1, max_length=255)
    password: str
    first_name: Optional[str] = Field(None, max_length=255)
    last_name: Optional[str] = Field(None, max_length=255)
    user_type: str = Field(default="actor", pattern=USER_TYPE_PATTERN)
    preferred_language: str = Field(default="en", pattern=LANGUAGE_PATTERN)


class UserUpdate(BaseModel):
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    username: Optional[str] = Field(None, min_length=1, max_length=255)
    password: Optional[str] = None
    first_name: Optional[str] = Field(None, max_length=255)
    last_name: Optional[str] = Field(None, max_length=255)
    user_type: Optional[str] = Field(None, pattern=USER_TYPE_PATTERN)
    preferred_language: Optional[str] = Field(None, pattern=LANGUAGE_PATTERN)
    is_active: Optional[bool] = None


class UserResponse(BaseModel):
    id: int
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_type: str
    preferred_language: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class SetupResponse(BaseModel):
    message: str
    user: UserResponse
