from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.models.checkout import ManagerCheckout
from backend.models.machine import Machine, MachineRequirement, TrainingProgress
from backend.models.user import ROLE_ADMIN, User


class RequirementStatus(BaseModel):
    module_id: int
    module_title: str
    required_percent: int
    watched_percent: int
    completed: bool


class EligibilityResult(BaseModel):
    eligible: bool
    reasons: list[str]
    requirements: list[RequirementStatus]
    has_checkout: bool

    @property
    def training_complete(self) -> bool:
        return all(requirement.completed for requirement in self.requirements)

    @property
    def training_reasons(self) -> list[str]:
        return [reason for reason in self.reasons if reason.startswith('Training ')]


def has_standing_checkout(db: Session, user_id: int, machine_id: int) -> bool:
    return db.query(ManagerCheckout.id).filter(
        ManagerCheckout.user_id == user_id,
        ManagerCheckout.machine_id == machine_id,
    ).first() is not None


def watched_percent(watched_seconds: int, duration_seconds: int) -> int:
    if duration_seconds <= 0:
        return 0
    return (watched_seconds * 100) // duration_seconds


def check_eligibility(db: Session, user_id: int, machine_id: int) -> EligibilityResult:
    """Whether a member may reserve a machine: active account, finished training, standing checkout."""
    reasons: list[str] = []
    requirements: list[RequirementStatus] = []

    user = db.get(User, user_id)
    if user is None:
        return EligibilityResult(eligible=False, reasons=['User not found'], requirements=[], has_checkout=False)

    if not user.is_active:
        reasons.append('User account is not active')

    machine = db.get(Machine, machine_id)
    if machine is None:
        return EligibilityResult(eligible=False, reasons=['Machine not found'], requirements=[], has_checkout=False)

    if not machine.active:
        reasons.append('Machine is not available')

    machine_requirements = db.query(MachineRequirement).filter(
        MachineRequirement.machine_id == machine_id,
    ).order_by(MachineRequirement.id.asc()).all()

    for requirement in machine_requirements:
        progress = db.query(TrainingProgress).filter(
            TrainingProgress.user_id == user_id,
            TrainingProgress.module_id == requirement.module_id,
        ).first()

        percent = watched_percent(progress.watched_seconds if progress else 0, requirement.module.duration_seconds)
        completed = percent >= requirement.required_watch_percent

        requirements.append(
            RequirementStatus(
                module_id=requirement.module_id,
                module_title=requirement.module.title,
                required_percent=requirement.required_watch_percent,
                watched_percent=percent,
                completed=completed,
            )
        )

        if not completed:
            reasons.append(
                f'Training "{requirement.module.title}" not completed '
                f'({percent}% of {requirement.required_watch_percent}% required)'
            )

    # Admins are implicitly checked out on every machine.
    has_checkout = user.role == ROLE_ADMIN or has_standing_checkout(db, user_id, machine_id)
    if not has_checkout:
        reasons.append('Manager checkout not approved')

    return EligibilityResult(
        eligible=not reasons,
        reasons=reasons,
        requirements=requirements,
        has_checkout=has_checkout,
    )
