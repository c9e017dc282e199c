"""
Reconciliation of CSV records against the existing Nextcloud accounts.

For every record the engine walks a fixed chain of skip rules and either skips
the record or creates the account. The first matching rule decides the bucket
the record is counted in:

1. empty email                                  -> skipped_no_email
2. external id + suffix is an existing user id  -> skipped_existing_external_id
   (external ID mode only)
3. email already known                          -> skipped_existing_email
4. display name is an existing user id          -> skipped_existing_userid
5. external ID mode without an external id      -> created_failed
6. otherwise create (or count as created in a dry run)
"""

import logging
from typing import Iterable, Set

from nc_provision.index import ExistingUserIndex
from nc_provision.models import Decision, Outcome, RunStatistics, UserRecord, UseridStrategy

logger = logging.getLogger(__name__)

MISSING_EXTERNAL_ID = "Missing external ID"


class ReconciliationEngine:
    """
    Decides and applies the create operations for a batch of CSV records.

    The engine owns its RunStatistics; read them through ``stats`` once
    ``run`` has returned.
    """

    def __init__(self, client, index: ExistingUserIndex, strategy: UseridStrategy,
                 group: str, userid_suffix: str = '', dry_run: bool = True,
                 track_created: bool = False):
        """
        Initialize reconciliation engine.

        Args:
            client: DirectoryServiceClient used for create calls
            index: Snapshot of existing emails and user ids
            strategy: How user ids are formed
            group: Group every new account is added to
            userid_suffix: Appended to the external id in external ID mode
            dry_run: Only count what would be created
            track_created: Also treat accounts created earlier in this run as existing
        """
        self.client = client
        self.index = index
        self.strategy = strategy
        self.group = group
        self.userid_suffix = userid_suffix or ''
        self.dry_run = dry_run
        self.track_created = track_created

        self.stats = RunStatistics()
        self._created_emails: Set[str] = set()
        self._created_userids: Set[str] = set()

    @property
    def external_id_mode(self) -> bool:
        return self.strategy is UseridStrategy.EXTERNAL_ID

    def _email_exists(self, email: str) -> bool:
        return self.index.has_email(email) or email in self._created_emails

    def _userid_exists(self, userid: str) -> bool:
        return self.index.has_userid(userid) or userid in self._created_userids

    def run(self, records: Iterable[UserRecord]) -> RunStatistics:
        """Process every record in order and return the statistics."""
        logger.info("Processing CSV file...")
        for record in records:
            self.process(record)
        logger.info("Processing complete")
        return self.stats

    def process(self, record: UserRecord) -> Decision:
        """Decide, apply and count a single record."""
        decision = self._decide(record)
        if decision.outcome is Outcome.CREATED_SUCCESS:
            decision = self._create(decision)

        self.stats.count(decision.outcome)
        if decision.outcome is Outcome.CREATED_FAILED:
            self.stats.add_error(decision.message)
        return decision

    def _decide(self, record: UserRecord) -> Decision:
        """Apply the skip rules in order; the first match is final."""
        userid = record.candidate_userid(self.strategy, self.userid_suffix)
        display_name = record.display_name

        if not record.email:
            logger.info(f"Skipping user with empty email: {display_name}")
            return Decision(record, Outcome.SKIPPED_NO_EMAIL, userid)

        if self.external_id_mode and record.external_id and self._userid_exists(userid):
            logger.info(f"Skipping user with existing external ID: {record.external_id} (user ID: {userid})")
            return Decision(record, Outcome.SKIPPED_EXISTING_EXTERNAL_ID, userid)

        if self._email_exists(record.email):
            logger.info(f"Skipping user with existing email: {record.email}")
            return Decision(record, Outcome.SKIPPED_EXISTING_EMAIL, userid)

        if self._userid_exists(display_name):
            logger.info(f"Skipping user with existing user ID: {display_name}")
            return Decision(record, Outcome.SKIPPED_EXISTING_USERID, userid)

        if self.external_id_mode and not record.external_id:
            logger.warning(f"Cannot create user {display_name} (email: {record.email}) "
                           f"on line {record.line_number}: {MISSING_EXTERNAL_ID}")
            return Decision(record, Outcome.CREATED_FAILED, userid, MISSING_EXTERNAL_ID)

        return Decision(record, Outcome.CREATED_SUCCESS, userid)

    def _create(self, decision: Decision) -> Decision:
        record = decision.record
        userid = decision.userid

        if self.dry_run:
            logger.info(f"Would create user: {userid} (email: {record.email}) (dry run)")
            self._remember(record, userid)
            return decision

        logger.info(f"Creating user: {userid} (email: {record.email})")
        result = self.client.create_user(userid, record.email, self.group)
        if not result.ok:
            logger.warning(f"Failed to create user {userid} (email: {record.email}): {result.message}")
            return Decision(record, Outcome.CREATED_FAILED, userid, result.message)

        logger.info(f"Successfully created user: {userid} (email: {record.email})")
        self._remember(record, userid)

        if self.external_id_mode:
            self._set_display_name(userid, record.display_name)
        return decision

    def _set_display_name(self, userid: str, display_name: str) -> None:
        """Set the display name of a new account; failure leaves the account in place."""
        result = self.client.set_display_name(userid, display_name)
        if result.ok:
            logger.info(f"Set display name for {userid}: {display_name}")
            return

        logger.warning(f"User {userid} was created but setting display name "
                       f"'{display_name}' failed: {result.message}")
        self.stats.warnings += 1
        self.stats.add_error(result.message)

    def _remember(self, record: UserRecord, userid: str) -> None:
        if not self.track_created:
            return
        self._created_emails.add(record.email)
        self._created_userids.add(userid)
