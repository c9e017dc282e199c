"""
Snapshot of the accounts that already exist on the Nextcloud server.
"""

import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class ExistingUserIndex:
    """
    Immutable lookup sets of existing emails and user ids.

    Built once per run; accounts created afterwards are not added to it.
    """

    def __init__(self, emails: Optional[Iterable[str]] = None, userids: Optional[Iterable[str]] = None):
        self._emails = frozenset(emails or ())
        self._userids = frozenset(userids or ())

    @property
    def emails(self) -> frozenset:
        return self._emails

    @property
    def userids(self) -> frozenset:
        return self._userids

    def has_email(self, email: str) -> bool:
        return email in self._emails

    def has_userid(self, userid: str) -> bool:
        return userid in self._userids

    def __len__(self) -> int:
        return len(self._userids)

    @classmethod
    def build(cls, client) -> 'ExistingUserIndex':
        """
        Fetch every user and their email address from the server.

        Makes one request for the user list and one per user. Connection and
        protocol errors from the user list propagate and abort the run.

        Args:
            client: DirectoryServiceClient (or anything with the same interface)

        Returns:
            Populated index
        """
        logger.info("Testing connection and retrieving user list...")
        userids = client.list_user_ids()

        logger.info("Retrieving email addresses for existing users...")
        emails = set()
        for userid in userids:
            logger.debug(f"  Checking user: {userid}")
            email = client.get_user_email(userid)
            if email:
                logger.debug(f"    Found email: {email}")
                emails.add(email)
            else:
                logger.debug("    No email found")

        index = cls(emails=emails, userids=userids)
        logger.info(f"Found {len(index.userids)} existing users with "
                    f"{len(index.emails)} unique email addresses")
        return index
