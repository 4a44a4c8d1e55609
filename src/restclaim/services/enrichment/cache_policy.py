"""Attribute-backed cache policy for enrichment results.

Claims fetched for a persistent identity are stored in that identity's own
attributes, alongside one freshness marker per endpoint:

    <prefix>.<config_id>.<claim_name>           -> claim values
    <prefix>.<config_id>.ep<N>.cached_at        -> "<epoch_seconds>|<fingerprint>"

A cached entry is served only while it is younger than the TTL and was
produced by an identical endpoint definition. The fingerprint is a SHA256
hash of canonical JSON over every field that affects the fetched claims, so
editing an endpoint invalidates its cache immediately.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable, Collection
from typing import Any, Final

from restclaim.persistence.repositories.attribute_store import AttributeStore
from restclaim.services.enrichment.errors import CacheCorruptionError
from restclaim.services.enrichment.models import (
    CacheRecord,
    ClaimSet,
    EndpointDefinition,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PREFIX: Final[str] = "rest_claim_mapper"
MARKER_SEPARATOR: Final[str] = "|"


def compute_fingerprint(endpoint: EndpointDefinition) -> str:
    """Compute a deterministic fingerprint of an endpoint definition.

    The index is not part of the fingerprint; it already namespaces the
    marker key.

    Args:
        endpoint: The endpoint definition.

    Returns:
        SHA256 hex digest string.
    """
    canonical: dict[str, Any] = {
        "auth_type": endpoint.auth_type.value,
        "auth_value": endpoint.auth_value,
        "mapping_rules": [[rule.source_field, rule.claim_name] for rule in endpoint.mapping_rules],
        "query_expression": endpoint.query_expression,
        "url": endpoint.url,
        "variable_names": list(endpoint.variable_names),
    }

    canonical_json = json.dumps(
        canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def parse_marker(raw: str) -> tuple[int, str]:
    """Parse a freshness marker into (stored_at, fingerprint).

    Raises:
        CacheCorruptionError: If the marker is malformed.
    """
    stamp, sep, fingerprint = raw.partition(MARKER_SEPARATOR)
    if not sep or not fingerprint:
        raise CacheCorruptionError(f"marker has no fingerprint: {raw!r}")
    try:
        return int(stamp), fingerprint
    except ValueError as exc:
        raise CacheCorruptionError(f"marker timestamp is not an integer: {stamp!r}") from exc


def format_marker(stored_at: int, fingerprint: str) -> str:
    """Format a freshness marker."""
    return f"{stored_at}{MARKER_SEPARATOR}{fingerprint}"


class AttributeCacheStore:
    """Reads and writes cached claims through an AttributeStore.

    One instance is bound to one mapper configuration; claim keys are
    namespaced by its config_id so two configurations never share entries.
    """

    def __init__(
        self,
        attribute_store: AttributeStore,
        config_id: str,
        *,
        prefix: str = DEFAULT_CACHE_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache store.

        Args:
            attribute_store: Durable per-identity attribute storage.
            config_id: Identifier of the owning mapper configuration.
            prefix: Namespace prefix for every key written.
            clock: Returns the current time in epoch seconds.
        """
        self._attributes = attribute_store
        self._config_id = config_id
        self._prefix = prefix
        self._clock = clock

    def claim_key(self, claim_name: str) -> str:
        """Attribute key holding a cached claim."""
        return f"{self._prefix}.{self._config_id}.{claim_name}"

    def marker_key(self, endpoint_index: int) -> str:
        """Attribute key holding an endpoint's freshness marker."""
        return f"{self._prefix}.{self._config_id}.ep{endpoint_index}.cached_at"

    def read_if_valid(
        self,
        identity_id: str,
        endpoint: EndpointDefinition,
        ttl_seconds: int,
    ) -> CacheRecord | None:
        """Return the cached claims of an endpoint if they are still valid.

        Returns None if the TTL is 0, the marker is absent or malformed, the
        entry has expired, or the endpoint definition changed since it was
        written.
        """
        if ttl_seconds <= 0:
            return None

        markers = self._attributes.get_attribute(identity_id, self.marker_key(endpoint.index))
        if not markers:
            return None

        try:
            stored_at, fingerprint = parse_marker(markers[0])
        except CacheCorruptionError as exc:
            logger.debug(
                "Ignoring corrupt cache marker for endpoint %d, identity %s: %s",
                endpoint.index,
                identity_id,
                exc,
            )
            return None

        age = int(self._clock()) - stored_at
        if age >= ttl_seconds:
            logger.debug(
                "Cache expired for endpoint %d, identity %s (age %ds)",
                endpoint.index,
                identity_id,
                age,
            )
            return None

        if fingerprint != compute_fingerprint(endpoint):
            logger.debug(
                "Cache invalidated for endpoint %d, identity %s: configuration changed",
                endpoint.index,
                identity_id,
            )
            return None

        claims: ClaimSet = {}
        for rule in endpoint.mapping_rules:
            values = self._attributes.get_attribute(identity_id, self.claim_key(rule.claim_name))
            if values:
                claims[rule.claim_name] = values[0] if len(values) == 1 else list(values)

        return CacheRecord(stored_at=stored_at, fingerprint=fingerprint, claims=claims)

    def write(
        self,
        identity_id: str,
        endpoint: EndpointDefinition,
        claims: ClaimSet,
        *,
        shadowed_claims: Collection[str] = (),
    ) -> CacheRecord:
        """Store freshly fetched claims and stamp the endpoint's marker.

        Every claim the endpoint maps is rewritten: produced claims get their
        new values and claims missing from the response are cleared, so a
        field the source stopped returning is not served from the cache.
        Claims are written before the marker, so a reader never sees a fresh
        marker without its claims.

        Args:
            identity_id: Identity the claims belong to.
            endpoint: Endpoint that produced the claims.
            claims: Claims extracted from the endpoint's response.
            shadowed_claims: Claim names owned by a lower-indexed endpoint in
                the same call; their keys are left untouched.
        """
        written: ClaimSet = {}
        claim_names = dict.fromkeys([rule.claim_name for rule in endpoint.mapping_rules])
        claim_names.update(dict.fromkeys(claims))
        for claim_name in claim_names:
            if claim_name in shadowed_claims:
                continue
            value = claims.get(claim_name)
            if value is None:
                values: list[str] = []
            else:
                values = [value] if isinstance(value, str) else list(value)
                written[claim_name] = value
            self._attributes.set_attribute(identity_id, self.claim_key(claim_name), values)

        record = CacheRecord(
            stored_at=int(self._clock()),
            fingerprint=compute_fingerprint(endpoint),
            claims=written,
        )
        self._attributes.set_attribute(
            identity_id,
            self.marker_key(endpoint.index),
            [format_marker(record.stored_at, record.fingerprint)],
        )
        return record
