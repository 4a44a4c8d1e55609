"""Tests for the token mapper facade.

Verifies:
- Identity context construction (standard fields win over attributes)
- Claims are written into the token payload, unrelated claims kept
- Persistent identities are cached, transient identities are not
- transform() never raises
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest

from restclaim.persistence.repositories.attribute_store import InMemoryAttributeStore
from restclaim.services.enrichment import mapper as mapper_module
from restclaim.services.enrichment.mapper import (
    RestClaimMapper,
    build_identity_context,
    create_mapper,
)
from restclaim.services.enrichment.models import (
    EndpointDefinition,
    Identity,
    MapperConfig,
    MappingRule,
)
from restclaim.services.enrichment.orchestrator import (
    EnrichmentOrchestrator,
    create_default_orchestrator,
)
from restclaim.services.enrichment.sandbox import SafeExpressionSandbox
from restclaim.settings import EngineSettings

MAPPER_LOGGER = "restclaim.services.enrichment.mapper"


class _FakeFetcher:
    def __init__(self, body: str | None = '{"role":"admin","groups":["a","b"]}') -> None:
        self._body = body
        self._lock = threading.Lock()
        self.calls: list[str | None] = []

    def fetch(self, endpoint: EndpointDefinition, query_string: str | None) -> str | None:
        with self._lock:
            self.calls.append(query_string)
        return self._body


class _ExplodingOrchestrator:
    def enrich(self, *args: Any, **kwargs: Any) -> dict[str, Any]:
        raise RuntimeError("orchestrator down")


def _make_identity(**overrides: Any) -> Identity:
    fields: dict[str, Any] = {
        "id": "user-001",
        "username": "jdoe",
        "email": "jdoe@example.com",
        "first_name": "Jane",
        "last_name": "Doe",
    }
    fields.update(overrides)
    return Identity(**fields)


def _make_config(url: str = "https://api.test/user") -> MapperConfig:
    endpoint = EndpointDefinition(
        index=1,
        url=url,
        variable_names=("username",),
        query_expression='"?user=" + username',
        mapping_rules=(
            MappingRule(source_field="role", claim_name="user_role"),
            MappingRule(source_field="$.groups", claim_name="user_groups"),
        ),
    )
    return MapperConfig(config_id="cfg-1", endpoints=(endpoint,))


def _make_mapper(
    fetcher: _FakeFetcher,
    pool: ThreadPoolExecutor,
    config: MapperConfig | None = None,
    attribute_store: InMemoryAttributeStore | None = None,
) -> RestClaimMapper:
    orchestrator = EnrichmentOrchestrator(fetcher, SafeExpressionSandbox(), pool, 5.0)
    return RestClaimMapper(config or _make_config(), orchestrator, attribute_store)


class TestIdentityContext:
    def test_standard_fields(self) -> None:
        context = build_identity_context(_make_identity(), "sess-9")

        assert context == {
            "sub": "user-001",
            "username": "jdoe",
            "email": "jdoe@example.com",
            "firstName": "Jane",
            "lastName": "Doe",
            "sessionId": "sess-9",
        }

    def test_attributes_add_first_value_without_overriding(self) -> None:
        identity = _make_identity(
            attributes={
                "department": ["eng", "ops"],
                "username": ["impostor"],
                "empty": [],
            }
        )

        context = build_identity_context(identity)

        assert context["department"] == "eng"
        assert context["username"] == "jdoe"
        assert "empty" not in context
        assert context["sessionId"] == ""


class TestTransform:
    def test_claims_written_and_existing_kept(self, worker_pool: ThreadPoolExecutor) -> None:
        fetcher = _FakeFetcher()
        mapper = _make_mapper(fetcher, worker_pool)
        token: dict[str, Any] = {"sub": "user-001", "iss": "https://idp.test"}

        result = mapper.transform(token, _make_identity())

        assert result is token
        assert token == {
            "sub": "user-001",
            "iss": "https://idp.test",
            "user_role": "admin",
            "user_groups": ["a", "b"],
        }
        assert fetcher.calls == ["?user=jdoe"]

    def test_resolved_claim_replaces_token_claim(self, worker_pool: ThreadPoolExecutor) -> None:
        mapper = _make_mapper(_FakeFetcher(), worker_pool)
        token: dict[str, Any] = {"user_role": "guest"}

        mapper.transform(token, _make_identity())

        assert token["user_role"] == "admin"

    def test_no_configured_endpoints_makes_no_call(
        self, worker_pool: ThreadPoolExecutor
    ) -> None:
        fetcher = _FakeFetcher()
        mapper = _make_mapper(fetcher, worker_pool, config=_make_config(url=""))
        token: dict[str, Any] = {}

        mapper.transform(token, _make_identity())

        assert token == {}
        assert fetcher.calls == []

    def test_failed_fetch_leaves_token_unchanged(self, worker_pool: ThreadPoolExecutor) -> None:
        mapper = _make_mapper(_FakeFetcher(body=None), worker_pool)
        token: dict[str, Any] = {"sub": "user-001"}

        mapper.transform(token, _make_identity())

        assert token == {"sub": "user-001"}

    def test_never_raises(self, caplog: pytest.LogCaptureFixture) -> None:
        mapper = RestClaimMapper(_make_config(), _ExplodingOrchestrator())  # type: ignore[arg-type]
        token: dict[str, Any] = {"sub": "user-001"}

        with caplog.at_level(logging.ERROR, logger=MAPPER_LOGGER):
            result = mapper.transform(token, _make_identity(), "sess-9")

        assert result == {"sub": "user-001"}
        assert "sess-9" in caplog.text


class TestCaching:
    def test_persistent_identity_cached(self, worker_pool: ThreadPoolExecutor) -> None:
        fetcher = _FakeFetcher()
        store = InMemoryAttributeStore()
        mapper = _make_mapper(fetcher, worker_pool, attribute_store=store)

        first = mapper.resolve_claims(_make_identity())
        second = mapper.resolve_claims(_make_identity())

        assert first == second == {"user_role": "admin", "user_groups": ["a", "b"]}
        assert len(fetcher.calls) == 1
        assert store.attributes_of("user-001")["rest_claim_mapper.cfg-1.user_role"] == ["admin"]

    def test_transient_identity_not_cached(self, worker_pool: ThreadPoolExecutor) -> None:
        fetcher = _FakeFetcher()
        store = InMemoryAttributeStore()
        mapper = _make_mapper(fetcher, worker_pool, attribute_store=store)
        transient = _make_identity(persistent=False)

        mapper.resolve_claims(transient)
        mapper.resolve_claims(transient)

        assert len(fetcher.calls) == 2
        assert store.attributes_of("user-001") == {}

    def test_without_store_persistent_identity_fetched_live(
        self, worker_pool: ThreadPoolExecutor
    ) -> None:
        fetcher = _FakeFetcher()
        mapper = _make_mapper(fetcher, worker_pool)

        mapper.resolve_claims(_make_identity())
        mapper.resolve_claims(_make_identity())

        assert len(fetcher.calls) == 2


class TestFromConfigMap:
    def test_parses_flat_configuration(self, worker_pool: ThreadPoolExecutor) -> None:
        fetcher = _FakeFetcher()
        orchestrator = EnrichmentOrchestrator(fetcher, SafeExpressionSandbox(), worker_pool)
        mapper = RestClaimMapper.from_config_map(
            {
                "endpoint.1.url": "https://api.test/user",
                "endpoint.1.query.param.1": "email",
                "endpoint.1.query.script": '"?mail=" + email',
                "endpoint.1.mapping": "role->user_role",
                "cache.ttl.seconds": "60",
            },
            config_id="cfg-7",
            orchestrator=orchestrator,
        )

        claims = mapper.resolve_claims(_make_identity())

        assert mapper.config.config_id == "cfg-7"
        assert mapper.config.cache_ttl_seconds == 60
        assert claims == {"user_role": "admin"}
        assert fetcher.calls == ["?mail=jdoe@example.com"]


class TestCreateMapper:
    def test_components_built_from_settings(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        built_with: list[EngineSettings | None] = []
        store = InMemoryAttributeStore()

        def fake_create_attribute_store(
            db_path: str | None = None, settings: EngineSettings | None = None
        ) -> InMemoryAttributeStore:
            built_with.append(settings)
            return store

        monkeypatch.setattr(mapper_module, "create_attribute_store", fake_create_attribute_store)
        settings = EngineSettings(
            worker_pool_size=2,
            fetch_deadline_seconds=2.5,
            attribute_db_path=str(tmp_path / "attributes.sqlite3"),
        )

        mapper = create_mapper(
            {"endpoint.1.url": "https://api.test/user", "endpoint.1.mapping": "role->r"},
            config_id="cfg-1",
            settings=settings,
        )

        assert built_with == [settings]
        assert mapper.config.config_id == "cfg-1"
        assert [ep.index for ep in mapper.config.configured_endpoints] == [1]
        assert mapper.orchestrator.deadline_seconds == 2.5

    def test_explicit_store_skips_sqlite(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fail(*args: Any, **kwargs: Any) -> None:
            raise AssertionError("attribute store should not be created")

        monkeypatch.setattr(mapper_module, "create_attribute_store", fail)

        mapper = create_mapper(
            {},
            config_id="cfg-1",
            settings=EngineSettings(),
            attribute_store=InMemoryAttributeStore(),
        )

        assert mapper.config.configured_endpoints == []

    def test_default_orchestrator_uses_settings(self) -> None:
        orchestrator = create_default_orchestrator(EngineSettings(fetch_deadline_seconds=3.0))

        assert orchestrator.deadline_seconds == 3.0

    def test_settings_loaded_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RESTCLAIM_FETCH_DEADLINE_SECONDS", "4")

        orchestrator = create_default_orchestrator()

        assert orchestrator.deadline_seconds == 4.0
