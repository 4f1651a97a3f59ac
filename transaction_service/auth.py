"""
auth.py — Authorization Gate

Resolves an employee session's privilege level against a requested action.
The session is resolved by the identity collaborator for each request and
passed explicitly into every core operation; the core never stores it.

This is a coarse binary gate: an action is allowed when the employee holds
an entry for it with authority >= 1. There is no role inheritance.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import Unauthorized
from .logging_config import get_logger
from .models import utc_now

log = get_logger(__name__)


class Action(str, Enum):
    FETCH_TRANSACTION = "FetchTransaction"
    CREATE_TRANSACTION = "CreateTransaction"
    MODIFY_TRANSACTION = "ModifyTransaction"
    DELETE_TRANSACTION = "DeleteTransaction"
    FETCH_PROMOTION = "FetchPromotion"
    CREATE_PROMOTION = "CreatePromotion"
    MODIFY_PROMOTION = "ModifyPromotion"
    GENERATE_TEMPLATE_CONTENT = "GenerateTemplateContent"


class Access(BaseModel):
    action: Action
    authority: int = 0


class Employee(BaseModel):
    id: str
    rid: str = ""
    name: str = ""
    level: List[Access] = Field(default_factory=list)


class Session(BaseModel):
    """
    An authenticated employee session.

    Attributes:
        id (str): Session identifier.
        key (str): Opaque session key presented by the client.
        employee (Employee): The authenticated employee and their privilege list.
        expiry (datetime): Instant after which the session is no longer valid.
    """
    id: str
    key: str
    employee: Employee
    expiry: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expiry


def authorize(session: Session, action: Action) -> bool:
    """
    Checks whether the session's employee may perform `action`.

    Args:
        session (Session): The requesting session.
        action (Action): The action being attempted.

    Returns:
        bool: True when the action is allowed. Template generation is always allowed;
        any other action needs an entry with authority >= 1 (a missing entry counts as 0).
    """
    access = next(
        (entry for entry in session.employee.level if entry.action == action),
        Access(action=action, authority=0),
    )

    if access.action == Action.GENERATE_TEMPLATE_CONTENT:
        return True
    return access.authority >= 1


def check_permissions(session: Session, action: Action, now: Optional[datetime] = None) -> None:
    """
    Raises Unauthorized unless the session is still valid and authorized for `action`.

    Raises:
        Unauthorized: If the session has expired or lacks the permission.
    """
    if session.is_expired(now):
        log.warning(f"[Session: {session.id}] Expired session used for {action.value}.")
        raise Unauthorized("Unable to validate session, user does not have valid session.")

    if not authorize(session, action):
        log.warning(f"[Session: {session.id}] Employee {session.employee.id} lacks {action.value} permission.")
        raise Unauthorized(f"User lacks {action.value} permission.")
