"""Token mapper facade.

RestClaimMapper is the entry point a token-issuance hook calls once per
token. It builds the identity context, picks the persistent or transient
path, runs the orchestrator and writes the resulting claims into the token
payload. It never raises: a failure leaves the token without extra claims.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from typing import Any

from restclaim.persistence.repositories.attribute_store import (
    AttributeStore,
    create_attribute_store,
)
from restclaim.services.enrichment.cache_policy import AttributeCacheStore
from restclaim.services.enrichment.config_parser import parse_mapper_config
from restclaim.services.enrichment.models import ClaimSet, Identity, MapperConfig
from restclaim.services.enrichment.orchestrator import (
    EnrichmentOrchestrator,
    create_default_orchestrator,
)
from restclaim.settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)


def build_identity_context(identity: Identity, session_id: str = "") -> dict[str, str]:
    """Flatten an identity into the context visible to query expressions.

    Standard fields come first; each profile attribute contributes its first
    value unless a standard field already uses that name.
    """
    context = {
        "sub": identity.id,
        "username": identity.username or "",
        "email": identity.email or "",
        "firstName": identity.first_name or "",
        "lastName": identity.last_name or "",
        "sessionId": session_id or "",
    }
    for name, values in identity.attributes.items():
        if values:
            context.setdefault(name, values[0])
    return context


class RestClaimMapper:
    """Enriches tokens with claims resolved from configured REST endpoints."""

    def __init__(
        self,
        config: MapperConfig,
        orchestrator: EnrichmentOrchestrator,
        attribute_store: AttributeStore | None = None,
    ) -> None:
        """Initialize the mapper.

        Args:
            config: Parsed mapper configuration.
            orchestrator: Shared enrichment orchestrator.
            attribute_store: Storage of persistent identities' attributes.
                Without it, persistent identities are fetched live.
        """
        self._config = config
        self._orchestrator = orchestrator
        self._cache_store = (
            AttributeCacheStore(attribute_store, config.config_id)
            if attribute_store is not None
            else None
        )

    @classmethod
    def from_config_map(
        cls,
        config: Mapping[str, str],
        *,
        config_id: str,
        orchestrator: EnrichmentOrchestrator,
        attribute_store: AttributeStore | None = None,
    ) -> RestClaimMapper:
        """Parse a flat configuration map once and build a mapper from it."""
        return cls(
            parse_mapper_config(config, config_id=config_id),
            orchestrator,
            attribute_store=attribute_store,
        )

    @property
    def config(self) -> MapperConfig:
        """The parsed configuration."""
        return self._config

    @property
    def orchestrator(self) -> EnrichmentOrchestrator:
        """The orchestrator resolving this mapper's endpoints."""
        return self._orchestrator

    def resolve_claims(self, identity: Identity, session_id: str = "") -> ClaimSet:
        """Resolve the claims of an identity without touching any token."""
        endpoints = self._config.configured_endpoints
        if not endpoints:
            logger.debug("No endpoints configured for mapper %s", self._config.config_id)
            return {}

        return self._orchestrator.enrich(
            identity.id,
            build_identity_context(identity, session_id),
            endpoints,
            self._config.cache_ttl_seconds,
            identity.persistent,
            cache_store=self._cache_store,
        )

    def transform(
        self,
        token_claims: MutableMapping[str, Any],
        identity: Identity,
        session_id: str = "",
    ) -> MutableMapping[str, Any]:
        """Write resolved claims into a token payload.

        Args:
            token_claims: Mutable claim map of the token being issued.
            identity: The identity the token is issued for.
            session_id: Current session identifier, exposed as "sessionId".

        Returns:
            The same token_claims mapping. Never raises.
        """
        try:
            claims = self.resolve_claims(identity, session_id)
            for name, value in claims.items():
                token_claims[name] = value
        except Exception:
            logger.error(
                "Unexpected error mapping claims for session %s; claims skipped",
                session_id,
                exc_info=True,
            )
        return token_claims


def create_mapper(
    config: Mapping[str, str],
    *,
    config_id: str,
    settings: EngineSettings | None = None,
    attribute_store: AttributeStore | None = None,
) -> RestClaimMapper:
    """Create a mapper wired with the default engine components.

    The fetcher, sandbox and worker pool are built from settings; the
    attribute store defaults to the SQLite file at settings.attribute_db_path.

    Raises:
        EngineSettingsError: If settings are loaded and invalid.
    """
    settings = settings or load_engine_settings()
    if attribute_store is None:
        attribute_store = create_attribute_store(settings=settings)
    return RestClaimMapper.from_config_map(
        config,
        config_id=config_id,
        orchestrator=create_default_orchestrator(settings),
        attribute_store=attribute_store,
    )
