"""Tool registry and the default tool handlers.

Every tool declares its arguments as a pydantic model; the same model
validates model output in the parser, re-validates in the router and produces
the JSON schema advertised to vendors. Handlers write through the
``ProfileStore`` one call at a time.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .constants import ROLE_COUNSELOR, ROLE_ONBOARDING, ROLE_PARSER, ROLE_SECRETARY
from .errors import InvalidArguments, ToolExecutionError, UnknownTool
from .ids import new_id
from .models import Goal, Task
from .store import ProfileStore


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SaveNameArgs(ToolArgs):
    first_name: str = Field(min_length=1)
    last_name: Optional[str] = None
    preferred_name: Optional[str] = None


class SaveGradeArgs(ToolArgs):
    grade: Literal["9th", "10th", "11th", "12th", "gap_year"]


class SaveHighSchoolArgs(ToolArgs):
    name: str = Field(min_length=1)
    city: Optional[str] = None
    state: Optional[str] = None


class SaveGpaArgs(ToolArgs):
    gpa_unweighted: Optional[float] = Field(default=None, ge=0, le=5)
    gpa_weighted: Optional[float] = Field(default=None, ge=0, le=6)
    gpa_scale: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _one_gpa(self) -> "SaveGpaArgs":
        if self.gpa_unweighted is None and self.gpa_weighted is None:
            raise ValueError("one of gpa_unweighted or gpa_weighted is required")
        return self


class SaveTestScoresArgs(ToolArgs):
    sat_total: Optional[int] = Field(default=None, ge=400, le=1600)
    sat_math: Optional[int] = Field(default=None, ge=200, le=800)
    sat_reading: Optional[int] = Field(default=None, ge=200, le=800)
    act_composite: Optional[int] = Field(default=None, ge=1, le=36)
    psat_total: Optional[int] = Field(default=None, ge=320, le=1520)

    @model_validator(mode="after")
    def _one_score(self) -> "SaveTestScoresArgs":
        if all(v is None for v in (self.sat_total, self.sat_math, self.sat_reading, self.act_composite, self.psat_total)):
            raise ValueError("at least one score is required")
        return self


class AddActivityArgs(ToolArgs):
    title: str = Field(min_length=1)
    organization: Optional[str] = None
    category: Optional[str] = None
    is_leadership: bool = False
    description: Optional[str] = None
    hours_per_week: Optional[float] = Field(default=None, ge=0, le=80)
    years_active: Optional[int] = Field(default=None, ge=0, le=6)


class AddAwardArgs(ToolArgs):
    title: str = Field(min_length=1)
    level: Optional[Literal["school", "regional", "state", "national", "international"]] = None
    organization: Optional[str] = None
    year: Optional[int] = None


class AddCourseArgs(ToolArgs):
    name: str = Field(min_length=1)
    status: Literal["completed", "in_progress", "planned"] = "in_progress"
    level: Optional[Literal["regular", "honors", "ap", "ib", "dual_enrollment"]] = None
    subject: Optional[str] = None
    grade_received: Optional[str] = None


class AddProgramArgs(ToolArgs):
    name: str = Field(min_length=1)
    type: Optional[str] = None
    status: Literal["interested", "applying", "applied", "accepted", "completed"] = "interested"
    organization: Optional[str] = None
    year: Optional[int] = None


class AddSchoolArgs(ToolArgs):
    school_name: str = Field(min_length=1)
    tier: Literal["reach", "target", "safety", "exploring"] = "exploring"
    is_dream: bool = False
    why_interested: Optional[str] = None


class CreateGoalArgs(ToolArgs):
    title: str = Field(min_length=1)
    category: str = "general"
    description: Optional[str] = None
    target_date: Optional[date] = None
    priority: Optional[Literal["high", "medium", "low"]] = None


class AddTaskArgs(ToolArgs):
    title: str = Field(min_length=1)
    goal_id: Optional[str] = None
    goal_title: Optional[str] = None
    due_date: Optional[date] = None

    @model_validator(mode="after")
    def _goal_ref(self) -> "AddTaskArgs":
        if not self.goal_id and not self.goal_title:
            raise ValueError("one of goal_id or goal_title is required")
        return self


class MarkObjectiveArgs(ToolArgs):
    objective_id: str = Field(min_length=1)
    note: Optional[str] = None


@dataclass
class ToolContext:
    """What a handler sees: the student, the store, and this batch's state."""
    student_id: str
    profile_store: ProfileStore
    pending_objectives: Sequence[str] = ()
    batch: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    widget: Optional[str] = None


Handler = Callable[[ToolContext, Any], ToolResult]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: Type[ToolArgs]
    handler: Handler
    critical: bool = False
    widget: Optional[str] = None

    def provider_schema(self) -> Dict[str, Any]:
        params = self.args_model.model_json_schema()
        params.pop("title", None)
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": params},
        }


def _format_validation_error(e: ValidationError) -> List[str]:
    out = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        if err.get("type") == "missing":
            out.append(f"missing required argument '{loc}'")
        elif loc:
            out.append(f"argument '{loc}': {err.get('msg')}")
        else:
            out.append(str(err.get("msg")))
    return out


class ToolRegistry:
    """Immutable name -> ToolSpec mapping, built once at startup."""

    def __init__(self, specs: Iterable[ToolSpec]):
        table: Dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in table:
                raise ValueError(f"Duplicate tool name '{spec.name}'")
            table[spec.name] = spec
        self._specs: Mapping[str, ToolSpec] = MappingProxyType(table)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> List[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownTool(f"unregistered tool '{name}'", name)
        return spec

    def validate(self, name: str, arguments: Any) -> ToolArgs:
        spec = self.get(name)
        if not isinstance(arguments, Mapping):
            raise InvalidArguments(f"tool '{name}': arguments must be an object", name, ["arguments must be an object"])
        try:
            return spec.args_model.model_validate(dict(arguments))
        except ValidationError as e:
            errors = _format_validation_error(e)
            raise InvalidArguments(f"tool '{name}': {'; '.join(errors)}", name, errors)

    def subset(self, names: Optional[Iterable[str]]) -> "ToolRegistry":
        if names is None:
            return self
        wanted = set(names)
        return ToolRegistry(spec for spec in self._specs.values() if spec.name in wanted)

    def without(self, names: Iterable[str]) -> "ToolRegistry":
        excluded = set(names)
        return ToolRegistry(spec for spec in self._specs.values() if spec.name not in excluded)

    def provider_tools(self) -> List[Dict[str, Any]]:
        return [spec.provider_schema() for spec in self._specs.values()]


def _save_name(ctx: ToolContext, args: SaveNameArgs) -> ToolResult:
    fields = args.model_dump(exclude_none=True)
    ctx.profile_store.update_profile(ctx.student_id, fields)
    return ToolResult(f"Saved name {args.first_name}", fields, "name")


def _save_grade(ctx: ToolContext, args: SaveGradeArgs) -> ToolResult:
    ctx.profile_store.update_profile(ctx.student_id, {"grade": args.grade})
    return ToolResult(f"Saved grade {args.grade}", {"grade": args.grade}, "grade")


def _save_high_school(ctx: ToolContext, args: SaveHighSchoolArgs) -> ToolResult:
    school = args.model_dump(exclude_none=True)
    ctx.profile_store.update_profile(ctx.student_id, {"high_school": school})
    return ToolResult(f"Saved high school {args.name}", school, "high_school")


def _save_gpa(ctx: ToolContext, args: SaveGpaArgs) -> ToolResult:
    academics = args.model_dump(exclude_none=True)
    ctx.profile_store.update_profile(ctx.student_id, {"academics": academics})
    shown = args.gpa_unweighted if args.gpa_unweighted is not None else args.gpa_weighted
    return ToolResult(f"Saved GPA {shown}", academics, "gpa")


def _save_test_scores(ctx: ToolContext, args: SaveTestScoresArgs) -> ToolResult:
    scores = args.model_dump(exclude_none=True)
    ctx.profile_store.update_profile(ctx.student_id, {"testing": scores})
    widget = "act" if args.act_composite is not None and args.sat_total is None else "sat"
    return ToolResult("Saved test scores", scores, widget)


def _record_adder(collection: str, label: str, widget: str) -> Handler:
    def handler(ctx: ToolContext, args: ToolArgs) -> ToolResult:
        record = ctx.profile_store.append_record(ctx.student_id, collection, args.model_dump(exclude_none=True, mode="json"))
        title = record.get("title") or record.get("name") or record.get("school_name") or ""
        return ToolResult(f"Added {label} {title}".strip(), record, widget)
    return handler


def _create_goal(ctx: ToolContext, args: CreateGoalArgs) -> ToolResult:
    goal = Goal(
        id=new_id("goal"),
        student_id=ctx.student_id,
        title=args.title,
        category=args.category,
        description=args.description,
        target_date=args.target_date.isoformat() if args.target_date else None,
        priority=args.priority,
    )
    created = ctx.profile_store.create_goal(goal)
    ctx.batch.setdefault("goals", {})[created.title.strip().lower()] = created.id
    return ToolResult(f"Created goal '{created.title}'", {"goal_id": created.id, "title": created.title}, "goal")


def _add_task_to_goal(ctx: ToolContext, args: AddTaskArgs) -> ToolResult:
    goal_id = args.goal_id
    if not goal_id and args.goal_title:
        goal_id = ctx.batch.get("goals", {}).get(args.goal_title.strip().lower())
    goal = ctx.profile_store.find_goal(ctx.student_id, goal_id=goal_id, title=args.goal_title)
    if goal is None:
        raise ToolExecutionError(f"No goal matching '{args.goal_id or args.goal_title}'", "add_task_to_goal")
    task = Task(
        id=new_id("task"),
        goal_id=goal.id,
        title=args.title,
        due_date=args.due_date.isoformat() if args.due_date else None,
    )
    ctx.profile_store.add_task(ctx.student_id, task)
    return ToolResult(f"Added task '{task.title}' to '{goal.title}'", {"task_id": task.id, "goal_id": goal.id}, "task")


def _mark_objective_addressed(ctx: ToolContext, args: MarkObjectiveArgs) -> ToolResult:
    if args.objective_id not in ctx.pending_objectives:
        raise ToolExecutionError(f"Objective '{args.objective_id}' is not pending", "mark_objective_addressed")
    return ToolResult(
        f"Objective {args.objective_id} addressed",
        {"objective_id": args.objective_id, "note": args.note},
    )


DEFAULT_TOOL_SPECS: List[ToolSpec] = [
    ToolSpec("save_name", "Save the student's name.", SaveNameArgs, _save_name, widget="name"),
    ToolSpec("save_grade", "Save the student's current grade level.", SaveGradeArgs, _save_grade, widget="grade"),
    ToolSpec("save_high_school", "Save the student's high school.", SaveHighSchoolArgs, _save_high_school, widget="high_school"),
    ToolSpec("save_gpa", "Save the student's GPA.", SaveGpaArgs, _save_gpa, widget="gpa"),
    ToolSpec("save_test_scores", "Save SAT, ACT or PSAT scores.", SaveTestScoresArgs, _save_test_scores, widget="sat"),
    ToolSpec("add_activity", "Add an extracurricular activity.", AddActivityArgs, _record_adder("activities", "activity", "activity"), widget="activity"),
    ToolSpec("add_award", "Add an award or honor.", AddAwardArgs, _record_adder("awards", "award", "award"), widget="award"),
    ToolSpec("add_course", "Add a course the student took, is taking or plans to take.", AddCourseArgs, _record_adder("courses", "course", "course"), widget="course"),
    ToolSpec("add_program", "Add a summer program, competition or similar opportunity.", AddProgramArgs, _record_adder("programs", "program", "program"), widget="program"),
    ToolSpec("add_school_to_list", "Add a college to the student's list.", AddSchoolArgs, _record_adder("schools", "school", "school"), widget="school"),
    ToolSpec("create_goal", "Create a goal the student committed to.", CreateGoalArgs, _create_goal, critical=True, widget="goal"),
    ToolSpec("add_task_to_goal", "Add a task under an existing goal, by goal id or title.", AddTaskArgs, _add_task_to_goal, widget="task"),
    ToolSpec("mark_objective_addressed", "Mark a session objective as addressed.", MarkObjectiveArgs, _mark_objective_addressed),
]

# None means every registered tool
ROLE_TOOLSETS: Dict[str, Optional[List[str]]] = {
    ROLE_ONBOARDING: ["save_name", "save_grade", "save_high_school", "add_school_to_list", "create_goal"],
    ROLE_COUNSELOR: None,
    ROLE_SECRETARY: None,
    ROLE_PARSER: None,
}


def default_registry(disabled: Iterable[str] = ()) -> ToolRegistry:
    return ToolRegistry(DEFAULT_TOOL_SPECS).without(disabled)


def registry_for_role(registry: ToolRegistry, role: str) -> ToolRegistry:
    return registry.subset(ROLE_TOOLSETS.get(role))
