"""Tests for the DAV gate: lockout, blocks, credentials, binding and admission."""

import time
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select, text

from davgate.api.dav_gate import _check_auth_lockout, _failed_auth_attempts
from davgate.core.clock import utcnow
from davgate.core.config import settings
from davgate.models.dav_user import DavUser, PrincipalRole
from davgate.services.block import BlockService
from davgate.services.errors import StoreError

pytestmark = pytest.mark.asyncio

SESSION_URL = "/dav/session"


def _failing_block_select(*entities):
    # PostgreSQL rejects the statement at execution with a division by zero
    return select(*entities).where(text("1/0 = 1"))


class TestAuthentication:
    async def test_anonymous_without_guest_is_challenged(self, async_client: AsyncClient):
        response = await async_client.get(SESSION_URL, headers={"X-Real-IP": "10.0.0.1"})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == 'Basic realm="davgate"'

    async def test_valid_basic_credentials(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        assert response.status_code == 200
        data = response.json()
        assert data["username"] == "alice"
        assert data["role"] == "general"
        assert data["address"] == "10.0.0.1"
        assert len(data["session_token"]) == 24

    async def test_wrong_password(self, async_client: AsyncClient, principal_factory, dav_headers):
        await principal_factory("alice")

        response = await async_client.get(
            SESSION_URL, headers=dav_headers("10.0.0.1", "alice", password="nope-nope")
        )

        assert response.status_code == 401

    async def test_unknown_user(self, async_client: AsyncClient, dav_headers):
        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "ghost"))

        assert response.status_code == 401

    async def test_expired_principal_refused_and_removed(
        self, async_client: AsyncClient, db_session, principal_factory, dav_headers
    ):
        await principal_factory("alice", expires_at=utcnow() - timedelta(minutes=1))
        await db_session.commit()

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        assert response.status_code == 401
        # get_db rolls the request transaction back on a refusal
        await db_session.rollback()
        remaining = await db_session.execute(select(DavUser.id).where(DavUser.username == "alice"))
        assert remaining.scalar_one_or_none() is None

    async def test_inactive_principal(
        self, async_client: AsyncClient, principal_factory, dav_headers, admin_headers
    ):
        alice = await principal_factory("alice")
        await async_client.patch(
            f"/api/dav/principals/{alice.id}", json={"is_active": False}, headers=admin_headers
        )

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        assert response.status_code == 403

    async def test_principal_without_read_access(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice", can_read=False)

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        assert response.status_code == 403

    async def test_guest_principal_admits_anonymous(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("anonymous", role=PrincipalRole.GUEST)

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1"))

        assert response.status_code == 200
        assert response.json()["username"] == "anonymous"
        assert response.json()["role"] == "guest"

    async def test_admin_token_admits_admin_principal(
        self, async_client: AsyncClient, principal_factory, admin_headers
    ):
        await principal_factory("root", role=PrincipalRole.ADMIN)

        response = await async_client.get(
            SESSION_URL,
            headers={**admin_headers, "X-Real-IP": "10.0.0.1"},
        )

        assert response.status_code == 200
        assert response.json()["role"] == "admin"

    async def test_wrong_bearer_token(self, async_client: AsyncClient, principal_factory):
        await principal_factory("root", role=PrincipalRole.ADMIN)

        response = await async_client.get(
            SESSION_URL,
            headers={"X-Real-IP": "10.0.0.1", "Authorization": "Bearer not-the-token"},
        )

        assert response.status_code == 401


class TestAuthLockout:
    async def test_repeated_failures_lock_the_address(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")
        bad = dav_headers("10.0.0.9", "alice", password="wrong-wrong")

        for _ in range(5):
            assert (await async_client.get(SESSION_URL, headers=bad)).status_code == 401

        # Even correct credentials are refused while locked
        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.9", "alice"))
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"

    async def test_lockout_is_per_address(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")
        bad = dav_headers("10.0.0.9", "alice", password="wrong-wrong")
        for _ in range(5):
            await async_client.get(SESSION_URL, headers=bad)

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.8", "alice"))

        assert response.status_code == 200

    async def test_success_resets_failures(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")
        bad = dav_headers("10.0.0.9", "alice", password="wrong-wrong")
        for _ in range(4):
            await async_client.get(SESSION_URL, headers=bad)

        assert (
            await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.9", "alice"))
        ).status_code == 200
        for _ in range(4):
            await async_client.get(SESSION_URL, headers=bad)

        assert (
            await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.9", "alice"))
        ).status_code == 200

    async def test_clean_addresses_leave_no_entries(self):
        for i in range(100):
            _check_auth_lockout(f"10.1.0.{i}")

        assert len(_failed_auth_attempts) == 0

    async def test_lapsed_failures_are_dropped(self):
        stale = time.monotonic() - settings.auth_lock_seconds - 1
        _failed_auth_attempts["10.0.0.9"] = [stale] * 10

        _check_auth_lockout("10.0.0.9")

        assert "10.0.0.9" not in _failed_auth_attempts


class TestBlockedAddresses:
    async def test_blocked_address_refused_before_credentials(
        self, async_client: AsyncClient, principal_factory, dav_headers, admin_headers
    ):
        await principal_factory("alice")
        created = await async_client.post(
            "/api/dav/blocks",
            json={"ip": "10.0.0.66", "unit": "permanent", "remark": "scanner"},
            headers=admin_headers,
        )
        assert created.status_code == 201

        blocked = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.66", "alice"))
        other = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        assert blocked.status_code == 403
        assert blocked.json()["detail"] == "Address is blocked"
        assert other.status_code == 200

    async def test_lifting_block_readmits(
        self, async_client: AsyncClient, principal_factory, dav_headers, admin_headers
    ):
        await principal_factory("alice")
        created = await async_client.post(
            "/api/dav/blocks", json={"ip": "10.0.0.66", "unit": "permanent"}, headers=admin_headers
        )
        await async_client.delete(f"/api/dav/blocks/{created.json()['id']}", headers=admin_headers)

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.66", "alice"))

        assert response.status_code == 200

    async def test_store_failure_refuses_request(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")

        with patch.object(
            BlockService, "is_blocked", AsyncMock(side_effect=StoreError("database down"))
        ):
            response = await async_client.get(
                SESSION_URL, headers=dav_headers("10.0.0.1", "alice")
            )

        assert response.status_code == 503

    async def test_fail_open_admits_when_block_lookup_fails(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")
        first = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))
        assert first.status_code == 200

        with (
            patch.object(settings, "block_check_fail_open", True),
            patch("davgate.services.block.select", _failing_block_select),
        ):
            response = await async_client.get(
                SESSION_URL, headers=dav_headers("10.0.0.1", "alice")
            )

        assert response.status_code == 200
        assert response.json()["session_id"] == first.json()["session_id"]

    async def test_failing_block_lookup_refuses_by_default(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")

        with (
            patch.object(settings, "block_check_fail_open", False),
            patch("davgate.services.block.select", _failing_block_select),
        ):
            response = await async_client.get(
                SESSION_URL, headers=dav_headers("10.0.0.1", "alice")
            )

        assert response.status_code == 503


class TestAddressBinding:
    async def test_bound_principal_only_admitted_from_bound_address(
        self, async_client: AsyncClient, principal_factory, dav_headers, admin_headers
    ):
        alice = await principal_factory("alice")
        bind = await async_client.put(
            f"/api/dav/principals/{alice.id}/bind", json={"ip": "10.0.0.5"}, headers=admin_headers
        )
        assert bind.status_code == 200

        elsewhere = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.6", "alice"))
        bound = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.5", "alice"))

        assert elsewhere.status_code == 403
        assert elsewhere.json()["detail"] == "Principal is bound to a different address"
        assert bound.status_code == 200

    async def test_clearing_binding(
        self, async_client: AsyncClient, principal_factory, dav_headers, admin_headers
    ):
        alice = await principal_factory("alice")
        await async_client.put(
            f"/api/dav/principals/{alice.id}/bind", json={"ip": "10.0.0.5"}, headers=admin_headers
        )
        await async_client.delete(f"/api/dav/principals/{alice.id}/bind", headers=admin_headers)

        response = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.6", "alice"))

        assert response.status_code == 200


class TestSessionAdmission:
    async def test_same_address_reuses_session(
        self, async_client: AsyncClient, principal_factory, dav_headers
    ):
        await principal_factory("alice")

        first = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))
        second = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        assert first.json()["session_id"] == second.json()["session_id"]

    async def test_session_limit(self, async_client: AsyncClient, principal_factory, dav_headers):
        await principal_factory("alice", max_sessions=1)

        first = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))
        second = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.2", "alice"))

        assert first.status_code == 200
        assert second.status_code == 403
        assert second.json()["detail"] == "Session not admitted: limit_reached"

    async def test_force_close_refuses_once_then_readmits(
        self, async_client: AsyncClient, principal_factory, dav_headers, admin_headers
    ):
        await principal_factory("alice")
        first = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        listing = await async_client.get(
            "/api/dav/sessions", params={"username": "alice"}, headers=admin_headers
        )
        session_id = listing.json()["items"][0]["id"]
        kicked = await async_client.delete(f"/api/dav/sessions/{session_id}", headers=admin_headers)
        assert kicked.status_code == 204

        refused = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))
        assert refused.status_code == 403
        assert refused.json()["detail"] == "Session not admitted: force_closed"

        readmitted = await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))
        assert readmitted.status_code == 200
        assert readmitted.json()["session_token"] != first.json()["session_token"]

    async def test_deactivation_kicks_sessions(
        self, async_client: AsyncClient, principal_factory, dav_headers, admin_headers
    ):
        alice = await principal_factory("alice")
        await async_client.get(SESSION_URL, headers=dav_headers("10.0.0.1", "alice"))

        await async_client.patch(
            f"/api/dav/principals/{alice.id}", json={"can_read": False}, headers=admin_headers
        )
        listing = await async_client.get("/api/dav/sessions", headers=admin_headers)

        assert listing.json()["total"] == 0
