"""Tenant identity resolution from untrusted request signals.

Whop tells an embedded app which company it is running for through several
inconsistent channels. Resolution walks an ordered table of named strategies
and takes the first tenant-id-shaped answer:

1. ``explicit`` - a candidate the caller already holds (e.g. a path param)
2. ``header``   - known ``x-whop-*`` company headers, in priority order
3. ``referer``  - a ``/dashboard/<tenant>`` segment in a whop.com referrer URL
4. ``query``    - a ``companyId`` query parameter
5. ``installation`` - the installation linked to the experience hint

If nothing matches the result is unresolved. Callers must treat that as a
failure; there is no default tenant.
"""

import logging
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence, Tuple

from ..errors import ResolutionFailed, StoreUnavailable
from ..installations.store import InstallationLookup

logger = logging.getLogger(__name__)

# Highest priority first
TENANT_HEADER_NAMES: Tuple[str, ...] = (
    "x-whop-company-id",
    "x-whop-companyid",
    "x-whop-company",
    "x-whop-business-id",
    "x-whop-biz-id",
)

# Referrers are only trusted when they come from the platform itself
PLATFORM_HOSTS: Tuple[str, ...] = ("whop.com",)


@dataclass(frozen=True)
class TenantIdShape:
    """A fixed literal prefix followed by an alphanumeric body."""

    prefix: str = "biz_"

    def __post_init__(self):
        object.__setattr__(
            self, "_pattern", re.compile(rf"{re.escape(self.prefix)}[A-Za-z0-9]+")
        )
        object.__setattr__(
            self, "_dashboard", re.compile(rf"/dashboard/({re.escape(self.prefix)}[A-Za-z0-9]+)(?=[/?#]|$)")
        )

    def matches(self, value: Optional[str]) -> bool:
        return isinstance(value, str) and self._pattern.fullmatch(value) is not None

    def from_dashboard_path(self, url: Optional[str]) -> Optional[str]:
        if not url:
            return None
        try:
            path = urllib.parse.urlsplit(url).path
        except ValueError:
            return None
        match = self._dashboard.search(path)
        return match.group(1) if match else None


@dataclass(frozen=True)
class ResolverSignals:
    """Everything a request tells us about its tenant. None of it is trusted."""

    header_tenant_hints: Mapping[str, str] = field(default_factory=dict)
    referer_url: Optional[str] = None
    query_candidate: Optional[str] = None
    experience_id_hint: Optional[str] = None
    explicit_candidate: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        value = self.header_tenant_hints.get(name.lower())
        if value is None:
            return None
        value = value.strip()
        return value or None

    def raw_header_hint(self, names: Sequence[str] = TENANT_HEADER_NAMES) -> Optional[str]:
        """First company header present, shaped or not."""
        for name in names:
            value = self.header(name)
            if value:
                return value
        return None


@dataclass(frozen=True)
class Resolution:
    tenant_id: Optional[str]
    source: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.tenant_id is not None


Matcher = Callable[[ResolverSignals, TenantIdShape], Optional[str]]


def _shaped(value: Optional[str], shape: TenantIdShape) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value if shape.matches(value) else None


def match_explicit(signals: ResolverSignals, shape: TenantIdShape) -> Optional[str]:
    return _shaped(signals.explicit_candidate, shape)


def match_header(signals: ResolverSignals, shape: TenantIdShape) -> Optional[str]:
    for name in TENANT_HEADER_NAMES:
        value = _shaped(signals.header(name), shape)
        if value:
            return value
    return None


def is_platform_url(url: Optional[str], hosts: Sequence[str] = PLATFORM_HOSTS) -> bool:
    if not url:
        return False
    try:
        host = (urllib.parse.urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    return any(host == h or host.endswith("." + h) for h in hosts)


def match_referer(signals: ResolverSignals, shape: TenantIdShape) -> Optional[str]:
    if not is_platform_url(signals.referer_url):
        return None
    return shape.from_dashboard_path(signals.referer_url)


def match_query(signals: ResolverSignals, shape: TenantIdShape) -> Optional[str]:
    return _shaped(signals.query_candidate, shape)


DIRECT_STRATEGIES: Tuple[Tuple[str, Matcher], ...] = (
    ("explicit", match_explicit),
    ("header", match_header),
    ("referer", match_referer),
    ("query", match_query),
)


class IdentityResolver:
    """Resolve a canonical tenant id from a signal bundle."""

    def __init__(
        self,
        store: Optional[InstallationLookup] = None,
        shape: Optional[TenantIdShape] = None,
        strategies: Sequence[Tuple[str, Matcher]] = DIRECT_STRATEGIES,
    ):
        self.store = store
        self.shape = shape or TenantIdShape()
        self.strategies = tuple(strategies)

    def resolve_direct(self, signals: ResolverSignals) -> Resolution:
        """Run only the signal strategies, without touching the store."""
        for name, matcher in self.strategies:
            tenant_id = matcher(signals, self.shape)
            if tenant_id:
                logger.debug("Resolved tenant %s via %s", tenant_id, name)
                return Resolution(tenant_id=tenant_id, source=name)
        return Resolution(tenant_id=None)

    async def resolve(self, signals: ResolverSignals) -> Resolution:
        """Resolve the tenant, falling back to the experience's installation.

        Raises:
            ResolutionFailed: the installation lookup itself failed.
        """
        resolution = self.resolve_direct(signals)
        if resolution.resolved or not signals.experience_id_hint or self.store is None:
            return resolution

        try:
            record = await self.store.find_by_experience_id(signals.experience_id_hint)
        except StoreUnavailable as e:
            logger.error(
                "Installation lookup failed for experience %s: %s",
                signals.experience_id_hint, e,
            )
            raise ResolutionFailed(
                f"Could not look up installation for {signals.experience_id_hint}"
            ) from e

        if record is None:
            return Resolution(tenant_id=None)
        if not self.shape.matches(record.tenant_id):
            logger.warning(
                "Installation for experience %s has malformed tenant id %r",
                signals.experience_id_hint, record.tenant_id,
            )
            return Resolution(tenant_id=None)
        return Resolution(tenant_id=record.tenant_id, source="installation")
