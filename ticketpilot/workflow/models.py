"""Type-safe data models and enums for the ticket workflow engine.

This module provides the shared type system for the phase state machine,
the result aggregator and the report formatter: workflow phases, the
analysis and implementation result records, and the small value types the
collaborators hand back to the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class WorkflowPhase(str, Enum):
    """Ticket workflow phases."""

    ANALYZING = "Analyzing"
    AWAITING_APPROVAL = "AwaitingApproval"
    IMPLEMENTING = "Implementing"
    BUILDING = "Building"
    TESTING = "Testing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowPhase.COMPLETED, WorkflowPhase.FAILED)


class Complexity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    VERY_HIGH = "VeryHigh"


class FileChangeType(str, Enum):
    CREATE = "Create"
    MODIFY = "Modify"
    DELETE = "Delete"


class ChangeCategory(str, Enum):
    CONTROLLER = "Controller"
    SERVICE = "Service"
    MODEL = "Model"
    OTHER = "Other"


class RiskSeverity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class ValidationType(str, Enum):
    UNIT_TEST = "UnitTest"
    MANUAL_TEST = "ManualTest"
    OTHER = "Other"


class ImplementationStatus(str, Enum):
    """Implementation lifecycle states."""

    COMPLETED = "Completed"
    BUILD_FAILED = "BuildFailed"
    TEST_FAILED = "TestFailed"
    FAILED = "Failed"
    IN_PROGRESS = "InProgress"


class Verdict(str, Enum):
    """Overall outcome computed from an implementation's sub-results."""

    SUCCESS = "Success"
    BUILD_FAILURE = "BuildFailure"
    TEST_FAILURE = "TestFailure"
    EXPLICIT_FAILURE = "ExplicitFailure"


class RejectionReason(str, Enum):
    """Why the phase state machine refused a transition."""

    ILLEGAL_TRANSITION = "IllegalTransition"
    WORKFLOW_BUSY = "WorkflowBusy"
    UNKNOWN_TICKET = "UnknownTicket"


def _enum_value(enum_cls: type[Enum], raw: Any, default: Enum) -> Any:
    """Coerce a raw string into enum_cls, falling back to default.

    Matching ignores case, spaces and underscores so that both "VeryHigh"
    and "very_high" resolve to the same member.
    """
    if isinstance(raw, enum_cls):
        return raw
    if raw is None:
        return default
    wanted = str(raw).replace("_", "").replace(" ", "").lower()
    for member in enum_cls:
        if member.value.lower() == wanted or member.name.replace("_", "").lower() == wanted:
            return member
    return default


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if not raw:
        return utcnow()
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class AffectedFile:
    """File touched by the planned change."""

    path: str
    change_type: FileChangeType = FileChangeType.MODIFY
    description: str = ""


@dataclass(frozen=True)
class RequiredChange:
    component: str
    description: str
    category: ChangeCategory = ChangeCategory.OTHER


@dataclass(frozen=True)
class TechnicalImpact:
    """Technical impact flags of the planned change."""

    has_breaking_changes: bool = False
    requires_migration: bool = False
    new_dependencies: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Risk:
    description: str
    severity: RiskSeverity = RiskSeverity.LOW
    mitigation: str = ""


@dataclass(frozen=True)
class Opportunity:
    description: str
    type: str = ""


@dataclass(frozen=True)
class ImplementationStep:
    order: int
    description: str


@dataclass(frozen=True)
class ValidationCriterion:
    description: str
    type: ValidationType = ValidationType.OTHER


@dataclass(frozen=True)
class AnalysisResult:
    """Result of the analysis phase for a ticket.

    Built once from the AI client's output and never mutated afterwards.

    Raises:
        ValueError: If the implementation plan orders are not 1..n ascending
    """

    ticket_id: str
    analyzed_at: datetime = field(default_factory=utcnow)
    complexity: Complexity = Complexity.MEDIUM
    estimated_effort_hours: int = 0
    affected_files: list[AffectedFile] = field(default_factory=list)
    required_changes: list[RequiredChange] = field(default_factory=list)
    technical_impact: TechnicalImpact = field(default_factory=TechnicalImpact)
    risks: list[Risk] = field(default_factory=list)
    opportunities: list[Opportunity] = field(default_factory=list)
    implementation_plan: list[ImplementationStep] = field(default_factory=list)
    validation_criteria: list[ValidationCriterion] = field(default_factory=list)

    def __post_init__(self) -> None:
        orders = [step.order for step in self.implementation_plan]
        if orders != list(range(1, len(orders) + 1)):
            raise ValueError(
                f"Implementation plan orders must be 1..{len(orders)} ascending, got {orders}"
            )
        if self.estimated_effort_hours < 0:
            raise ValueError("Estimated effort cannot be negative")

    @classmethod
    def from_dict(cls, data: dict[str, Any], ticket_id: Optional[str] = None) -> AnalysisResult:
        """Build an AnalysisResult from its JSON-compatible dict form.

        Args:
            data: Dictionary as produced by to_dict() or by the AI client
            ticket_id: Overrides data["ticket_id"] when given

        Returns:
            Validated AnalysisResult
        """
        impact = data.get("technical_impact") or {}
        return cls(
            ticket_id=ticket_id or data.get("ticket_id", ""),
            analyzed_at=_parse_datetime(data.get("analyzed_at")),
            complexity=_enum_value(Complexity, data.get("complexity"), Complexity.MEDIUM),
            estimated_effort_hours=int(data.get("estimated_effort_hours") or 0),
            affected_files=[
                AffectedFile(
                    path=f.get("path", ""),
                    change_type=_enum_value(
                        FileChangeType, f.get("change_type"), FileChangeType.MODIFY
                    ),
                    description=f.get("description", ""),
                )
                for f in data.get("affected_files", [])
            ],
            required_changes=[
                RequiredChange(
                    component=c.get("component", ""),
                    description=c.get("description", ""),
                    category=_enum_value(
                        ChangeCategory, c.get("category"), ChangeCategory.OTHER
                    ),
                )
                for c in data.get("required_changes", [])
            ],
            technical_impact=TechnicalImpact(
                has_breaking_changes=bool(impact.get("has_breaking_changes", False)),
                requires_migration=bool(impact.get("requires_migration", False)),
                new_dependencies=list(impact.get("new_dependencies", [])),
            ),
            risks=[
                Risk(
                    description=r.get("description", ""),
                    severity=_enum_value(RiskSeverity, r.get("severity"), RiskSeverity.LOW),
                    mitigation=r.get("mitigation", ""),
                )
                for r in data.get("risks", [])
            ],
            opportunities=[
                Opportunity(description=o.get("description", ""), type=o.get("type", ""))
                for o in data.get("opportunities", [])
            ],
            implementation_plan=[
                ImplementationStep(order=int(s["order"]), description=s.get("description", ""))
                for s in data.get("implementation_plan", [])
            ],
            validation_criteria=[
                ValidationCriterion(
                    description=v.get("description", ""),
                    type=_enum_value(ValidationType, v.get("type"), ValidationType.OTHER),
                )
                for v in data.get("validation_criteria", [])
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (inverse of from_dict)."""
        return {
            "ticket_id": self.ticket_id,
            "analyzed_at": self.analyzed_at.isoformat(),
            "complexity": self.complexity.value,
            "estimated_effort_hours": self.estimated_effort_hours,
            "affected_files": [
                {"path": f.path, "change_type": f.change_type.value, "description": f.description}
                for f in self.affected_files
            ],
            "required_changes": [
                {"component": c.component, "description": c.description, "category": c.category.value}
                for c in self.required_changes
            ],
            "technical_impact": {
                "has_breaking_changes": self.technical_impact.has_breaking_changes,
                "requires_migration": self.technical_impact.requires_migration,
                "new_dependencies": list(self.technical_impact.new_dependencies),
            },
            "risks": [
                {"description": r.description, "severity": r.severity.value, "mitigation": r.mitigation}
                for r in self.risks
            ],
            "opportunities": [
                {"description": o.description, "type": o.type} for o in self.opportunities
            ],
            "implementation_plan": [
                {"order": s.order, "description": s.description} for s in self.implementation_plan
            ],
            "validation_criteria": [
                {"description": v.description, "type": v.type.value}
                for v in self.validation_criteria
            ],
        }


@dataclass(frozen=True)
class FileChange:
    path: str
    lines_added: int = 0
    lines_removed: int = 0


@dataclass(frozen=True)
class BuildResult:
    """Outcome of the build step."""

    is_success: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    output: str = ""


@dataclass(frozen=True)
class TestResult:
    """Outcome of the test step.

    Raises:
        ValueError: If code_coverage is outside [0, 1]
    """

    __test__ = False  # keep pytest from collecting this class

    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    code_coverage: Optional[float] = None

    def __post_init__(self) -> None:
        if self.code_coverage is not None and not 0.0 <= self.code_coverage <= 1.0:
            raise ValueError(f"Code coverage must be within [0, 1], got {self.code_coverage}")

    @property
    def all_passed(self) -> bool:
        return self.failed_tests == 0


@dataclass(frozen=True)
class ImplementationError:
    message: str
    phase: str = ""
    details: Optional[str] = None


@dataclass(frozen=True)
class CommitInfo:
    hash: str
    message: str = ""

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


@dataclass
class ImplementationResult:
    """Result of the implementation, build and test phases for a ticket.

    The orchestrator fills this record while the run progresses; reports
    only read it once the run reached a terminal phase.
    """

    ticket_id: str
    branch_name: str = ""
    status: ImplementationStatus = ImplementationStatus.IN_PROGRESS
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    created_files: list[FileChange] = field(default_factory=list)
    modified_files: list[FileChange] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
    commits: list[CommitInfo] = field(default_factory=list)
    build_result: Optional[BuildResult] = None
    test_result: Optional[TestResult] = None
    errors: list[ImplementationError] = field(default_factory=list)
    pull_request_url: Optional[str] = None
    pull_request_number: Optional[int] = None

    @property
    def duration(self) -> Optional[timedelta]:
        """Elapsed time, or None while the run has not completed."""
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    @property
    def is_success(self) -> bool:
        return (
            self.status == ImplementationStatus.COMPLETED
            and not self.errors
            and (self.build_result is None or self.build_result.is_success)
            and (self.test_result is None or self.test_result.all_passed)
        )


@dataclass(frozen=True)
class Ticket:
    """Ticket as returned by the ticket tracker."""

    id: str
    title: str = ""
    description: str = ""
    type: str = "Task"
    priority: str = "Medium"
    status: str = ""
    labels: list[str] = field(default_factory=list)
    url: str = ""

    @property
    def is_bug(self) -> bool:
        return self.type.lower() == "bug"


@dataclass(frozen=True)
class PullRequestInfo:
    number: int
    url: str
    title: str = ""
    source_branch: str = ""
    target_branch: str = ""


@dataclass(frozen=True)
class GeneratedFile:
    """Single file in a change set produced by the AI client."""

    path: str
    action: FileChangeType = FileChangeType.MODIFY
    content: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeneratedFile:
        """Build a GeneratedFile from a change set entry.

        Raises:
            ValueError: If the entry has no path
        """
        if not data.get("path"):
            raise ValueError(f"Change set entry has no path: {data!r}")
        return cls(
            path=data["path"],
            action=_enum_value(FileChangeType, data.get("action"), FileChangeType.MODIFY),
            content=data.get("content") or "",
        )


@dataclass(frozen=True)
class ChangeSet:
    files: list[GeneratedFile] = field(default_factory=list)
    explanation: str = ""


@dataclass(frozen=True)
class TransitionResult:
    """Result of a phase transition request."""

    accepted: bool
    reason: Optional[RejectionReason] = None
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
