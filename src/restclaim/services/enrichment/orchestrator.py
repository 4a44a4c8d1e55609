"""Enrichment orchestrator.

Runs one enrichment call across every configured endpoint:

1. Cache check (persistent identities only) -> hit: claims are read in place
2. Miss: one unit of work is submitted to the shared worker pool
   (evaluate query expression -> fetch -> extract)
3. All units are awaited under one shared deadline; units still queued are
   cancelled and units still running are abandoned
4. Completed successful units are persisted by the calling thread, in
   ascending index order, never overwriting a claim a lower index produced
5. Per-endpoint claims are merged; the lowest endpoint index wins on a
   claim-name collision

enrich() never raises. A failing endpoint contributes no claims and does not
affect its siblings.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Final, Protocol

from restclaim.services.enrichment.cache_policy import AttributeCacheStore
from restclaim.services.enrichment.extractor import extract
from restclaim.services.enrichment.fetcher import SourceFetcher
from restclaim.services.enrichment.models import (
    CacheRecord,
    ClaimSet,
    EndpointDefinition,
    ExpressionEvaluator,
)
from restclaim.services.enrichment.sandbox import SafeExpressionSandbox
from restclaim.settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_SECONDS: Final[float] = 10.0
WORKER_THREAD_PREFIX: Final[str] = "restclaim-worker"


class EndpointFetcher(Protocol):
    """Anything that can GET an endpoint and return its raw body."""

    def fetch(self, endpoint: EndpointDefinition, query_string: str | None) -> str | None:
        """Return the response body, or None on failure."""
        ...


@dataclass(frozen=True)
class EndpointOutcome:
    """Result of one endpoint within an enrichment call.

    Attributes:
        endpoint: The endpoint this outcome belongs to.
        claims: Extracted (or cached) claims; empty on failure.
        success: True if claims came from the cache or from a response.
        from_cache: True if the claims were served from the cache.
    """

    endpoint: EndpointDefinition
    claims: ClaimSet = field(default_factory=dict)
    success: bool = False
    from_cache: bool = False


def create_worker_pool(size: int) -> ThreadPoolExecutor:
    """Create the bounded worker pool shared by every enrichment call.

    Args:
        size: Maximum number of concurrently running endpoint fetches.

    Raises:
        ValueError: If size is not positive.
    """
    if size <= 0:
        raise ValueError(f"worker pool size must be positive, got {size}")
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix=WORKER_THREAD_PREFIX)


def build_query_variables(
    endpoint: EndpointDefinition, context: Mapping[str, str]
) -> dict[str, str]:
    """Select the identity-context fields an endpoint's expression may read.

    Declared names missing from the context are bound to "".
    """
    return {name: context.get(name, "") for name in endpoint.variable_names}


def merge_outcomes(outcomes: Iterable[EndpointOutcome]) -> ClaimSet:
    """Merge per-endpoint claims; the lowest endpoint index wins on collisions."""
    merged: ClaimSet = {}
    for outcome in sorted(outcomes, key=lambda o: o.endpoint.index, reverse=True):
        if outcome.success:
            merged.update(outcome.claims)
    return merged


class EnrichmentOrchestrator:
    """Fans an enrichment call out to its endpoints under one deadline.

    The fetcher, sandbox and worker pool are process-wide and shared by
    every call; the orchestrator holds no per-call state.
    """

    def __init__(
        self,
        fetcher: EndpointFetcher,
        sandbox: ExpressionEvaluator,
        executor: ThreadPoolExecutor,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
        cache_store: AttributeCacheStore | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            fetcher: Performs the outbound HTTP calls.
            sandbox: Evaluates query expressions.
            executor: Bounded worker pool for endpoint fetches.
            deadline_seconds: Ceiling on one call's wait for its fetches.
            cache_store: Default cache store for persistent identities.
        """
        if deadline_seconds <= 0:
            raise ValueError(f"deadline_seconds must be positive, got {deadline_seconds}")
        self._fetcher = fetcher
        self._sandbox = sandbox
        self._executor = executor
        self._deadline_seconds = deadline_seconds
        self._cache_store = cache_store

    @property
    def deadline_seconds(self) -> float:
        """The shared fetch deadline of one enrichment call."""
        return self._deadline_seconds

    def enrich(
        self,
        identity_id: str,
        context: Mapping[str, str],
        endpoints: Iterable[EndpointDefinition],
        ttl_seconds: int,
        persistent: bool,
        cache_store: AttributeCacheStore | None = None,
    ) -> ClaimSet:
        """Resolve the claims of one identity across all endpoints.

        Args:
            identity_id: Identity the claims are resolved for.
            context: Read-only identity context for query expressions.
            endpoints: Endpoint definitions; unconfigured ones are ignored.
            ttl_seconds: Cache TTL for persistent identities.
            persistent: True if the identity is eligible for caching.
            cache_store: Overrides the default cache store for this call.

        Returns:
            Merged claims (possibly empty). Never raises.
        """
        try:
            store = (cache_store or self._cache_store) if persistent else None
            outcomes = self.run(identity_id, context, endpoints, ttl_seconds, store)
            return merge_outcomes(outcomes)
        except Exception:
            logger.error(
                "Unexpected error enriching identity %s; claims skipped",
                identity_id,
                exc_info=True,
            )
            return {}

    def run(
        self,
        identity_id: str,
        context: Mapping[str, str],
        endpoints: Iterable[EndpointDefinition],
        ttl_seconds: int,
        store: AttributeCacheStore | None,
    ) -> list[EndpointOutcome]:
        """Resolve every endpoint and return one outcome per endpoint.

        With no store, every endpoint is fetched live and nothing is written.
        """
        outcomes: list[EndpointOutcome] = []
        pending: dict[Future[ClaimSet | None], EndpointDefinition] = {}

        for endpoint in endpoints:
            if not endpoint.is_configured:
                continue

            if store is not None:
                record = self._read_cache(store, identity_id, endpoint, ttl_seconds)
                if record is not None:
                    logger.debug(
                        "Cache hit for endpoint %d, identity %s", endpoint.index, identity_id
                    )
                    outcomes.append(
                        EndpointOutcome(
                            endpoint=endpoint,
                            claims=record.claims,
                            success=True,
                            from_cache=True,
                        )
                    )
                    continue
                logger.debug("Cache miss for endpoint %d, identity %s", endpoint.index, identity_id)

            variables = build_query_variables(endpoint, context)
            future = self._executor.submit(self._resolve_endpoint, endpoint, variables)
            pending[future] = endpoint

        if not pending:
            return outcomes

        done, not_done = wait(pending, timeout=self._deadline_seconds)

        for future in not_done:
            future.cancel()
            endpoint = pending[future]
            logger.warning(
                "Endpoint %d did not complete within %.1fs for identity %s; result discarded",
                endpoint.index,
                self._deadline_seconds,
                identity_id,
            )
            outcomes.append(EndpointOutcome(endpoint=endpoint))

        for future in sorted(done, key=lambda f: pending[f].index):
            endpoint = pending[future]
            try:
                claims = future.result()
            except Exception:
                logger.error(
                    "Endpoint %d failed for identity %s",
                    endpoint.index,
                    identity_id,
                    exc_info=True,
                )
                outcomes.append(EndpointOutcome(endpoint=endpoint))
                continue

            if claims is None:
                outcomes.append(EndpointOutcome(endpoint=endpoint))
                continue

            outcomes.append(EndpointOutcome(endpoint=endpoint, claims=claims, success=True))

        if store is not None:
            self._persist_fresh(store, identity_id, outcomes)

        return outcomes

    def _resolve_endpoint(
        self, endpoint: EndpointDefinition, variables: dict[str, str]
    ) -> ClaimSet | None:
        query_string = self._sandbox.evaluate(endpoint.query_expression, variables)
        raw = self._fetcher.fetch(endpoint, query_string)
        if raw is None:
            logger.warning("Endpoint %d returned no data", endpoint.index)
            return None
        return extract(raw, endpoint.mapping_rules)

    @staticmethod
    def _read_cache(
        store: AttributeCacheStore,
        identity_id: str,
        endpoint: EndpointDefinition,
        ttl_seconds: int,
    ) -> CacheRecord | None:
        try:
            return store.read_if_valid(identity_id, endpoint, ttl_seconds)
        except Exception as exc:
            logger.warning(
                "Cache read failed for endpoint %d, identity %s; fetching live: %s",
                endpoint.index,
                identity_id,
                exc,
            )
            return None

    @classmethod
    def _persist_fresh(
        cls,
        store: AttributeCacheStore,
        identity_id: str,
        outcomes: Iterable[EndpointOutcome],
    ) -> None:
        """Write back fetched claims in ascending endpoint order.

        Claim keys are shared by all endpoints of a configuration, so a claim
        already produced by a lower-indexed endpoint in this call is not
        overwritten; a later cache hit then yields the same merge result.
        """
        claimed: set[str] = set()
        for outcome in sorted(outcomes, key=lambda o: o.endpoint.index):
            if not outcome.success:
                continue
            if not outcome.from_cache:
                cls._persist(store, identity_id, outcome.endpoint, outcome.claims, claimed)
            claimed.update(outcome.claims)

    @staticmethod
    def _persist(
        store: AttributeCacheStore,
        identity_id: str,
        endpoint: EndpointDefinition,
        claims: ClaimSet,
        shadowed_claims: set[str],
    ) -> None:
        try:
            store.write(
                identity_id, endpoint, claims, shadowed_claims=frozenset(shadowed_claims)
            )
        except Exception as exc:
            logger.error(
                "Failed to cache claims of endpoint %d for identity %s: %s",
                endpoint.index,
                identity_id,
                exc,
            )


def create_default_orchestrator(
    settings: EngineSettings | None = None,
    cache_store: AttributeCacheStore | None = None,
) -> EnrichmentOrchestrator:
    """Create an orchestrator wired with the default engine components.

    Args:
        settings: Engine settings. If None, loaded from the environment.
        cache_store: Optional default cache store for persistent identities.

    Raises:
        EngineSettingsError: If settings are loaded and invalid.
    """
    settings = settings or load_engine_settings()
    return EnrichmentOrchestrator(
        fetcher=SourceFetcher(settings=settings),
        sandbox=SafeExpressionSandbox(),
        executor=create_worker_pool(settings.worker_pool_size),
        deadline_seconds=settings.fetch_deadline_seconds,
        cache_store=cache_store,
    )
