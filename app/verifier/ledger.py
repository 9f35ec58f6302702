"""Identity Ledger port and adapters.

The ledger is the read-only source of truth for subject attributes and
certificates. Two adapters are provided:

- Web3IdentityLedger: reads the UserRegistry contract over JSON-RPC
- InMemoryIdentityLedger: dict-backed, for development and tests

Neither adapter applies a timeout; the IdentityResolver bounds every read.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from app.verifier.models import (
    CertificateRecord,
    CertificateType,
    Role,
    SubjectRecord,
    coerce_enum,
)

log = logging.getLogger(__name__)


class IdentityLedger(ABC):
    """Read port onto the identity ledger."""

    @abstractmethod
    async def get_subject(self, subject_id: str) -> Optional[SubjectRecord]:
        """Return the subject's attributes, or None if not registered."""

    @abstractmethod
    async def get_certificates(self, subject_id: str) -> List[CertificateRecord]:
        """Return every certificate held by the subject (possibly empty)."""

    async def close(self) -> None:
        """Release client resources."""


def parse_date_of_birth(raw: Any) -> Optional[date]:
    """Parse the ledger's date-of-birth string.

    The registry stores dates as ISO strings ("1990-06-15"), sometimes with
    a time part appended. Anything else yields None.
    """
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str) or len(raw.strip()) < 10:
        return None
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return None


def subject_from_dict(data: Dict[str, Any]) -> SubjectRecord:
    """Build a SubjectRecord from the /user wire form."""
    return SubjectRecord(
        name=data.get("name", ""),
        date_of_birth=parse_date_of_birth(data.get("dob")),
        gender=data.get("gender", ""),
        physical_address=data.get("physicalAddress", ""),
        mobile_number=data.get("mobileNumber", ""),
        role=coerce_enum(Role, data.get("role"), Role.NONE),
        is_verified=bool(data.get("isVerified", False)),
    )


# =============================================================================
# UserRegistry contract adapter
# =============================================================================

_CERTIFICATE_COMPONENTS = [
    {"internalType": "address", "name": "userAddress", "type": "address"},
    {"internalType": "address", "name": "authorityAddress", "type": "address"},
    {"internalType": "string", "name": "certificateId", "type": "string"},
    {"internalType": "string", "name": "issuanceDate", "type": "string"},
    {"internalType": "string", "name": "ipfsHash", "type": "string"},
    {"internalType": "string", "name": "metadataHash", "type": "string"},
    {"internalType": "enum UserRegistry.CertificateType", "name": "certificateType", "type": "uint8"},
    {"internalType": "bool", "name": "isVerified", "type": "bool"},
    {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
]

# Read-only subset of the UserRegistry ABI
USER_REGISTRY_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "_userAddress", "type": "address"}],
        "name": "getUserData",
        "outputs": [
            {"internalType": "string", "name": "name", "type": "string"},
            {"internalType": "string", "name": "dob", "type": "string"},
            {"internalType": "string", "name": "gender", "type": "string"},
            {"internalType": "string", "name": "physicalAddress", "type": "string"},
            {"internalType": "string", "name": "mobileNumber", "type": "string"},
            {"internalType": "enum UserRegistry.Role", "name": "role", "type": "uint8"},
            {"internalType": "bool", "name": "isVerified", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "_userAddress", "type": "address"}],
        "name": "getUserCertificates",
        "outputs": [
            {
                "components": _CERTIFICATE_COMPONENTS,
                "internalType": "struct UserRegistry.Certificate[]",
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


class Web3IdentityLedger(IdentityLedger):
    """UserRegistry contract reader.

    [USAGE]
        ledger = Web3IdentityLedger(
            rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
            contract_address="0x2B63013176D551b98045703f41A00f6BcCa04DdC",
        )
        subject = await ledger.get_subject("0x...")
    """

    def __init__(self, rpc_url: str, contract_address: str):
        from web3 import AsyncHTTPProvider, AsyncWeb3

        self.rpc_url = rpc_url
        self._to_checksum = AsyncWeb3.to_checksum_address
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.contract = self.w3.eth.contract(
            address=self._to_checksum(contract_address),
            abi=USER_REGISTRY_ABI,
        )
        log.info(f"Identity ledger: UserRegistry {contract_address} via {rpc_url}")

    async def get_subject(self, subject_id: str) -> Optional[SubjectRecord]:
        from web3.exceptions import ContractLogicError

        try:
            data = await self.contract.functions.getUserData(
                self._to_checksum(subject_id)
            ).call()
        except ContractLogicError as e:
            # The registry reverts for unregistered addresses
            log.debug(f"getUserData reverted for {subject_id}: {e}")
            return None

        name, dob, gender, physical_address, mobile_number, role, is_verified = data
        if not name and int(role) == Role.NONE:
            return None

        return SubjectRecord(
            name=name,
            date_of_birth=parse_date_of_birth(dob),
            gender=gender,
            physical_address=physical_address,
            mobile_number=mobile_number,
            role=coerce_enum(Role, role, Role.NONE),
            is_verified=bool(is_verified),
        )

    async def get_certificates(self, subject_id: str) -> List[CertificateRecord]:
        from web3.exceptions import ContractLogicError

        try:
            rows = await self.contract.functions.getUserCertificates(
                self._to_checksum(subject_id)
            ).call()
        except ContractLogicError as e:
            log.debug(f"getUserCertificates reverted for {subject_id}: {e}")
            return []

        certificates = []
        for row in rows or []:
            (user, authority, cert_id, issuance_date, ipfs_hash,
             metadata_hash, cert_type, is_verified, timestamp) = row
            certificates.append(CertificateRecord(
                subject_id=user,
                issuer_id=authority,
                certificate_id=cert_id,
                issuance_date=issuance_date,
                content_hash=ipfs_hash,
                metadata_hash=metadata_hash,
                certificate_type=coerce_enum(CertificateType, cert_type, CertificateType.OTHER),
                is_verified=bool(is_verified),
                issued_at_timestamp=int(timestamp),
            ))
        return certificates

    async def close(self) -> None:
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


# =============================================================================
# In-memory adapter
# =============================================================================


class InMemoryIdentityLedger(IdentityLedger):
    """Dict-backed ledger. Addresses are matched case-insensitively."""

    def __init__(
        self,
        subjects: Optional[Dict[str, SubjectRecord]] = None,
        certificates: Optional[Dict[str, Iterable[CertificateRecord]]] = None,
    ):
        self._subjects: Dict[str, SubjectRecord] = {}
        self._certificates: Dict[str, List[CertificateRecord]] = {}
        for subject_id, record in (subjects or {}).items():
            self.add_subject(subject_id, record)
        for subject_id, certs in (certificates or {}).items():
            for cert in certs:
                self.add_certificate(subject_id, cert)

    def add_subject(self, subject_id: str, record: SubjectRecord) -> None:
        self._subjects[subject_id.lower()] = record

    def add_certificate(self, subject_id: str, certificate: CertificateRecord) -> None:
        self._certificates.setdefault(subject_id.lower(), []).append(certificate)

    async def get_subject(self, subject_id: str) -> Optional[SubjectRecord]:
        return self._subjects.get(subject_id.lower())

    async def get_certificates(self, subject_id: str) -> List[CertificateRecord]:
        return list(self._certificates.get(subject_id.lower(), []))

    @classmethod
    def from_fixtures(cls, path: str) -> "InMemoryIdentityLedger":
        """Load subjects and certificates from a JSON file.

        Format:
            {
              "subjects": {"0x...": {"name": ..., "dob": "1990-06-15", ...}},
              "certificates": {"0x...": [{"metadataHash": "{\\"amount\\": 40000}", ...}]}
            }
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        ledger = cls()
        for subject_id, raw in data.get("subjects", {}).items():
            ledger.add_subject(subject_id, subject_from_dict(raw))
        for subject_id, rows in data.get("certificates", {}).items():
            for raw in rows:
                ledger.add_certificate(subject_id, CertificateRecord.from_dict(raw))
        log.info(
            f"Loaded ledger fixtures from {path}: "
            f"{len(ledger._subjects)} subjects, "
            f"{sum(len(c) for c in ledger._certificates.values())} certificates"
        )
        return ledger


def create_identity_ledger() -> IdentityLedger:
    """Build the ledger adapter selected by configuration."""
    from app.core.config import (
        LEDGER_BACKEND,
        LEDGER_CONTRACT_ADDRESS,
        LEDGER_FIXTURES_PATH,
        LEDGER_RPC_URL,
    )

    if LEDGER_BACKEND == "memory":
        if LEDGER_FIXTURES_PATH:
            return InMemoryIdentityLedger.from_fixtures(LEDGER_FIXTURES_PATH)
        log.warning("In-memory identity ledger without fixtures: every subject is unknown")
        return InMemoryIdentityLedger()
    if LEDGER_BACKEND == "web3":
        return Web3IdentityLedger(LEDGER_RPC_URL, LEDGER_CONTRACT_ADDRESS)
    raise ValueError(f"Unknown ledger backend: {LEDGER_BACKEND!r}")
