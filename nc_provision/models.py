"""
Data models shared by the CSV reader, the reconciliation engine and the reporter.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict


class UseridStrategy(Enum):
    """How the Nextcloud user id of a CSV record is formed"""
    DISPLAY_NAME = "display_name"
    EXTERNAL_ID = "external_id"


class Outcome(Enum):
    """Terminal bucket a CSV record is counted in"""
    SKIPPED_NO_EMAIL = "skipped_no_email"
    SKIPPED_EXISTING_EMAIL = "skipped_existing_email"
    SKIPPED_EXISTING_USERID = "skipped_existing_userid"
    SKIPPED_EXISTING_EXTERNAL_ID = "skipped_existing_external_id"
    CREATED_SUCCESS = "created_success"
    CREATED_FAILED = "created_failed"


@dataclass
class UserRecord:
    """One data row of the input CSV"""
    first_name: str
    last_name: str
    email: str
    external_id: str = ""
    line_number: int = 0

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def candidate_userid(self, strategy: UseridStrategy, suffix: str = "") -> str:
        """User id this record would be created with under the given strategy"""
        if strategy is UseridStrategy.EXTERNAL_ID:
            return f"{self.external_id}{suffix}"
        return self.display_name


@dataclass
class Decision:
    """What the engine did with a single record"""
    record: UserRecord
    outcome: Outcome
    userid: str
    message: str = ""


@dataclass
class RunStatistics:
    """Per-bucket counters for one provisioning run"""
    total_processed: int = 0
    skipped_no_email: int = 0
    skipped_existing_email: int = 0
    skipped_existing_userid: int = 0
    skipped_existing_external_id: int = 0
    created_success: int = 0
    created_failed: int = 0
    warnings: int = 0
    error_reasons: Dict[str, int] = field(default_factory=dict)

    def count(self, outcome: Outcome) -> None:
        """Count a processed record in its terminal bucket"""
        self.total_processed += 1
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def add_error(self, message: str) -> None:
        self.error_reasons[message] = self.error_reasons.get(message, 0) + 1

    def bucket_total(self) -> int:
        return sum(getattr(self, outcome.value) for outcome in Outcome)
