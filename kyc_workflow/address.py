import asyncio
import logging
from datetime import date
from typing import List, Optional, Set

from config import settings, ADDRESS_DOCUMENT_TYPES
from .exceptions import INFRASTRUCTURE_ERRORS
from .extractor import AddressReader
from .models import Address, AddressDocumentReading, AddressProofResult
from .utils import normalize_text

logger = logging.getLogger(__name__)

MIN_TOKEN_OVERLAP = 0.6
MIN_TOKEN_OVERLAP_WITHOUT_POSTCODE = 0.7


def _tokens(address: Address) -> Set[str]:
    return set(normalize_text(address.as_text()).split())


def _postcode(address: Address) -> str:
    return normalize_text(address.postal_code).replace(" ", "")


class AddressProofVerifier:
    """
    Validates a proof-of-address document against the claimed address
    """

    def __init__(self, reader: AddressReader, timeout: Optional[float] = None):
        self.reader = reader
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.max_age_days = settings.ADDRESS_PROOF_MAX_AGE_DAYS
        self.min_confidence = settings.ADDRESS_MIN_CONFIDENCE

    def addresses_match(self, found: Optional[Address], claimed: Optional[Address]) -> bool:
        """Compare postcodes when both carry one, then the overlap of address tokens"""
        if not found or not claimed:
            return False
        found_tokens, claimed_tokens = _tokens(found), _tokens(claimed)
        if not found_tokens or not claimed_tokens:
            return False
        overlap = len(found_tokens & claimed_tokens) / len(found_tokens | claimed_tokens)

        found_pc, claimed_pc = _postcode(found), _postcode(claimed)
        if found_pc and claimed_pc:
            return found_pc == claimed_pc and overlap >= MIN_TOKEN_OVERLAP
        return overlap >= MIN_TOKEN_OVERLAP_WITHOUT_POSTCODE

    def assess(self, reading: AddressDocumentReading, claimed: Optional[Address],
               today: Optional[date] = None) -> AddressProofResult:
        today = today or date.today()
        issues: List[str] = []

        accepted_type = reading.document_type in ADDRESS_DOCUMENT_TYPES
        if not accepted_type:
            issues.append(f"Unsupported proof-of-address document: {reading.document_type}")

        if claimed is None:
            issues.append("No claimed address to compare against")
        address_match = self.addresses_match(reading.address, claimed)
        if claimed is not None and not address_match:
            issues.append("Address does not match")

        recent = False
        if reading.issue_date is None:
            issues.append("Issue date not readable")
        elif (today - reading.issue_date).days > self.max_age_days:
            issues.append(f"Document too old (> {self.max_age_days} days)")
        else:
            recent = True

        readable = reading.confidence >= self.min_confidence
        if not readable:
            issues.append("Document could not be read with enough confidence")

        verified = accepted_type and address_match and recent and readable
        return AddressProofResult(
            verified=verified,
            confidence=reading.confidence if verified else min(reading.confidence, 60.0),
            document_type=reading.document_type,
            address_match=address_match,
            issue_date=reading.issue_date,
            issues=issues,
        )

    async def verify(self, address_document: bytes, claimed: Optional[Address]) -> AddressProofResult:
        try:
            reading = await asyncio.wait_for(self.reader.read(address_document), timeout=self.timeout)
        except INFRASTRUCTURE_ERRORS:
            raise
        except asyncio.TimeoutError:
            logger.warning("Address document read timed out after %ss", self.timeout)
            return AddressProofResult(verified=False, confidence=0.0, document_type="Unknown",
                                      address_match=False, issues=["Address verification timed out"])
        except Exception as e:
            logger.error("Address document read failed: %s", e)
            return AddressProofResult(verified=False, confidence=0.0, document_type="Unknown",
                                      address_match=False, issues=["Address document could not be read"])
        return self.assess(reading, claimed)
