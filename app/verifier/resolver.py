"""Identity resolution with bounded ledger reads.

Every ledger call is wrapped in asyncio.wait_for so that a hung ledger
surfaces as LedgerTimeout instead of hanging the request. Cancelling the
caller cancels the in-flight read.
"""

import asyncio
import logging
from typing import Awaitable, List, Optional, TypeVar

from app.core.config import LEDGER_TIMEOUT_SECONDS
from app.verifier.exceptions import LedgerTimeout, SubjectNotFound
from app.verifier.ledger import IdentityLedger
from app.verifier.models import CertificateRecord, SubjectRecord

log = logging.getLogger(__name__)

T = TypeVar("T")


class IdentityResolver:
    """Fetches subject data from the Identity Ledger port.

    Results are never cached: attributes may change between requests.
    """

    def __init__(self, ledger: IdentityLedger, timeout_seconds: Optional[float] = None):
        self.ledger = ledger
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else LEDGER_TIMEOUT_SECONDS
        )

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            log.warning(f"Ledger {operation} timed out after {self.timeout_seconds}s")
            raise LedgerTimeout(operation, self.timeout_seconds)

    async def resolve_subject(self, subject_id: str) -> SubjectRecord:
        """Resolve the subject's attribute record.

        Raises:
            SubjectNotFound: The ledger has no record for subject_id.
            LedgerTimeout: The ledger did not answer in time.
        """
        subject = await self._bounded("getUserData", self.ledger.get_subject(subject_id))
        if subject is None:
            log.info(f"Subject not found on ledger: {subject_id}")
            raise SubjectNotFound(subject_id)
        return subject

    async def resolve_certificates(self, subject_id: str) -> List[CertificateRecord]:
        """Resolve every certificate held by the subject.

        An empty list is a normal result.

        Raises:
            LedgerTimeout: The ledger did not answer in time.
        """
        certificates = await self._bounded(
            "getUserCertificates", self.ledger.get_certificates(subject_id)
        )
        certificates = list(certificates or [])
        log.debug(f"Resolved {len(certificates)} certificates for {subject_id}")
        return certificates
