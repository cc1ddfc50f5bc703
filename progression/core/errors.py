"""Domain errors raised by the progression services.

Services raise these; the HTTP layer (see progression/main.py) maps each
family to a status code.  Nothing in the service layer retries on
StoreError: a blind retry of a grant could apply it twice, so the caller
decides.

  ProgressionError
  ├── NotFoundError          missing user profile, module, lesson, lab
  ├── InvalidInputError      rejected before any write happens
  │   ├── InvalidAmountError     non-positive XP amount
  │   └── ModuleLockedError      prerequisite not met and no assignment
  └── StoreError             the durable store failed mid-operation
"""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for every error this service raises on purpose."""


class NotFoundError(ProgressionError):
    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class InvalidInputError(ProgressionError):
    pass


class InvalidAmountError(InvalidInputError):
    def __init__(self, amount: int) -> None:
        super().__init__(f"XP amount must be positive (got {amount})")
        self.amount = amount


class ModuleLockedError(InvalidInputError):
    def __init__(self, user_id: str, module_id: str) -> None:
        super().__init__(f"module {module_id} is locked for user {user_id}")
        self.user_id = user_id
        self.module_id = module_id


class StoreError(ProgressionError):
    pass
