"""
AML, sanctions and PEP screening.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from config import settings, SANCTIONS_LISTS
from .exceptions import INFRASTRUCTURE_ERRORS
from .models import (
    AMLCheckResult, ComplianceResult, IdentityAttributes, PEPCheckResult, SanctionsCheckResult,
)
from .utils import normalize_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchlistEntry:
    """A listed person"""
    name: str
    list_name: str
    date_of_birth: Optional[date] = None
    positions: List[str] = field(default_factory=list)

    def matches(self, identity: IdentityAttributes) -> bool:
        if not identity.full_name:
            return False
        if self.date_of_birth and identity.date_of_birth and self.date_of_birth != identity.date_of_birth:
            return False
        # Word order differs between lists and documents
        return set(normalize_text(self.name).split()) == set(normalize_text(identity.full_name).split())


class ComplianceDataProvider(ABC):
    """External compliance data source"""

    @abstractmethod
    async def screen(self, identity: IdentityAttributes) -> ComplianceResult:
        pass


class WatchlistComplianceProvider(ComplianceDataProvider):
    """
    Screens against in-memory watchlists.

    With no entries configured every screening passes, which is the reference
    behaviour for environments without a compliance data feed.
    """

    def __init__(self, aml_entries: Iterable[WatchlistEntry] = (),
                 sanctions_entries: Iterable[WatchlistEntry] = (),
                 pep_entries: Iterable[WatchlistEntry] = ()):
        self.aml_entries = list(aml_entries)
        self.sanctions_entries = list(sanctions_entries)
        self.pep_entries = list(pep_entries)

    async def screen(self, identity: IdentityAttributes) -> ComplianceResult:
        aml_hits = [e for e in self.aml_entries if e.matches(identity)]
        sanction_hits = [e for e in self.sanctions_entries if e.matches(identity)]
        pep_hits = [e for e in self.pep_entries if e.matches(identity)]

        if aml_hits or sanction_hits or pep_hits:
            logger.info("Watchlist hits: aml=%d sanctions=%d pep=%d",
                        len(aml_hits), len(sanction_hits), len(pep_hits))

        return ComplianceResult(
            aml_check=AMLCheckResult(
                passed=not aml_hits,
                match_found=bool(aml_hits),
                confidence=99.0,
                matched_lists=sorted({e.list_name for e in aml_hits}),
            ),
            sanctions_check=SanctionsCheckResult(
                passed=not sanction_hits,
                match_found=bool(sanction_hits),
                lists=list(SANCTIONS_LISTS),
                match_details=[{"list": e.list_name, "name": e.name, "score": 100} for e in sanction_hits],
            ),
            pep_check=PEPCheckResult(
                is_pep=bool(pep_hits),
                confidence=95.0,
                positions=[p for e in pep_hits for p in e.positions],
                last_updated=datetime.now(timezone.utc),
            ),
        )


class ComplianceScreeningService:
    """
    Runs AML watchlist, sanctions-list and PEP checks against identity attributes
    """

    def __init__(self, provider: ComplianceDataProvider, timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    def _unscreened(self) -> ComplianceResult:
        # An unanswered screening is a failed one, so it always reaches a reviewer
        return ComplianceResult(
            aml_check=AMLCheckResult(passed=False, match_found=False, confidence=0.0),
            sanctions_check=SanctionsCheckResult(passed=False, match_found=False, lists=list(SANCTIONS_LISTS)),
            pep_check=PEPCheckResult(is_pep=False, confidence=0.0),
        )

    async def screen(self, identity: IdentityAttributes) -> ComplianceResult:
        try:
            return await asyncio.wait_for(self.provider.screen(identity), timeout=self.timeout)
        except INFRASTRUCTURE_ERRORS:
            raise
        except asyncio.TimeoutError:
            logger.warning("Compliance screening timed out after %ss", self.timeout)
        except Exception as e:
            logger.error("Compliance screening failed: %s", e)
        return self._unscreened()
