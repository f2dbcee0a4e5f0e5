"""Tests for break-glass emergency codes.

Covers issuance, the single conditional claim used by redemption, the
rejection paths and what each writes to the audit trail.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from healthchain_access.access.collaborators import StaticActorDirectory, StaticProfileSource
from healthchain_access.access.emergency import EmergencyTokenService
from healthchain_access.access.models import (
    ActorIdentity,
    EmergencyAccessToken,
    EmergencyProfile,
    PermissionSource,
    TemporaryScope,
    TokenState,
)
from healthchain_access.access.temporary import TemporaryPermissionManager
from healthchain_access.access.tokens import hash_token
from healthchain_access.audit.models import AuditAction
from healthchain_access.config import AccessConfig
from healthchain_access.errors import (
    INVALID_TOKEN_MESSAGE,
    AccessDeniedError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    StorageError,
    ValidationError,
)

CODE = "K7QX-2MPA-9RTD"
WHY = "Unresponsive patient in ER, allergy history needed"


def token_row(now, *, expires_in=timedelta(minutes=15), is_active=True, **overrides):
    row = {
        "token_id": uuid4(),
        "token_hash": hash_token(CODE),
        "patient_id": "patient-1",
        "issued_by": "patient-1",
        "issued_at": now - timedelta(minutes=1),
        "expires_at": now + expires_in,
        "is_active": is_active,
        "used_at": None,
        "used_by": None,
        "revoked_at": None,
        "revoked_by": None,
        "expired_at": None,
    }
    row.update(overrides)
    return row


def recorded_actions(mock_audit):
    return [c.args[1].action for c in mock_audit.record.await_args_list]


class TestEmergencyAccessToken:
    def test_states(self, clock):
        now = clock.now()
        issued = EmergencyAccessToken.from_db_row(token_row(now))
        redeemed = EmergencyAccessToken.from_db_row(
            token_row(now, is_active=False, used_at=now, used_by="dr-a")
        )
        revoked = EmergencyAccessToken.from_db_row(
            token_row(now, is_active=False, revoked_at=now, revoked_by="patient-1")
        )
        lapsed = EmergencyAccessToken.from_db_row(token_row(now, expires_in=timedelta(0)))

        assert issued.state(now) == TokenState.ISSUED
        assert redeemed.state(now) == TokenState.REDEEMED
        assert revoked.state(now) == TokenState.REVOKED
        assert lapsed.state(now) == TokenState.EXPIRED

    def test_active_flag_does_not_override_expiry(self, clock):
        token = EmergencyAccessToken.from_db_row(
            token_row(clock.now(), expires_in=timedelta(seconds=-1))
        )
        assert token.is_active is True
        assert token.is_redeemable(clock.now()) is False
        assert token.seconds_remaining(clock.now()) == 0.0

    def test_plaintext_not_in_repr(self, clock):
        token = EmergencyAccessToken.from_db_row(token_row(clock.now()))
        token.token = CODE
        assert CODE not in repr(token)


class TestIssue:
    @pytest.fixture
    def service(self, mock_audit, clock):
        temporary = TemporaryPermissionManager(mock_audit, clock=clock)
        return EmergencyTokenService(mock_audit, temporary, clock=clock)

    async def test_issue_stores_only_hash(self, service, mock_conn, mock_audit, clock):
        mock_conn.fetchval.return_value = False

        token = await service.issue(mock_conn, "patient-1", issued_by="patient-1")

        assert token.token is not None
        assert token.expires_at == clock.now() + timedelta(minutes=15)
        insert_args = mock_conn.execute.await_args.args
        assert "INSERT INTO emergency_access_tokens" in insert_args[0]
        assert hash_token(token.token) in insert_args
        assert token.token not in insert_args

    async def test_issue_audits_without_code(self, service, mock_conn, mock_audit):
        mock_conn.fetchval.return_value = False

        token = await service.issue(mock_conn, "patient-1", timedelta(minutes=5))

        event = mock_audit.record.await_args.args[1]
        assert event.action == AuditAction.EMERGENCY_ISSUE
        assert event.subject_patient_id == "patient-1"
        assert event.actor_id is None
        assert event.metadata["ttl_seconds"] == 300
        assert token.token not in str(event.metadata)

    async def test_issue_regenerates_on_collision(self, service, mock_conn):
        mock_conn.fetchval.side_effect = [True, False]

        await service.issue(mock_conn, "patient-1")

        assert mock_conn.fetchval.await_count == 2

    async def test_issue_gives_up_after_repeated_collisions(self, service, mock_conn):
        mock_conn.fetchval.return_value = True

        with pytest.raises(StorageError, match="unique emergency access code"):
            await service.issue(mock_conn, "patient-1")
        mock_conn.execute.assert_not_awaited()

    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(minutes=-5)])
    async def test_non_positive_ttl_rejected(self, service, mock_conn, ttl):
        with pytest.raises(ValidationError, match="positive duration"):
            await service.issue(mock_conn, "patient-1", ttl)

    async def test_ttl_above_maximum_rejected(self, service, mock_conn):
        with pytest.raises(ValidationError, match="cannot exceed 1440 minutes"):
            await service.issue(mock_conn, "patient-1", timedelta(hours=25))

    async def test_session_duration_defaults_to_config(self, service, mock_conn):
        mock_conn.fetchval.return_value = False

        token = await service.issue(mock_conn, "patient-1")

        assert token.session_duration == timedelta(minutes=60)
        assert timedelta(minutes=60) in mock_conn.execute.await_args.args

    async def test_session_duration_is_stored_with_code(self, service, mock_conn, mock_audit):
        mock_conn.fetchval.return_value = False

        token = await service.issue(
            mock_conn, "patient-1", timedelta(minutes=5), session_duration=timedelta(hours=4)
        )

        assert token.session_duration == timedelta(hours=4)
        insert_args = mock_conn.execute.await_args.args
        assert "session_duration" in insert_args[0]
        assert insert_args[-1] == timedelta(hours=4)
        assert mock_audit.record.await_args.args[1].metadata["session_seconds"] == 4 * 3600

    @pytest.mark.parametrize("session", [timedelta(0), timedelta(minutes=-1)])
    async def test_non_positive_session_rejected(self, service, mock_conn, session):
        with pytest.raises(ValidationError, match="session_duration must be a positive"):
            await service.issue(mock_conn, "patient-1", session_duration=session)
        mock_conn.execute.assert_not_awaited()

    async def test_session_above_maximum_rejected(self, service, mock_conn):
        with pytest.raises(ValidationError, match="session cannot exceed 1440 minutes"):
            await service.issue(mock_conn, "patient-1", session_duration=timedelta(hours=25))

    async def test_issuer_identity_in_audit_metadata(self, mock_audit, mock_conn, clock):
        actors = StaticActorDirectory(
            {"nurse-7": ActorIdentity("nurse-7", "Nurse Jackie", "nurse")}
        )
        temporary = TemporaryPermissionManager(mock_audit, clock=clock)
        service = EmergencyTokenService(mock_audit, temporary, clock=clock, actors=actors)
        mock_conn.fetchval.return_value = False

        await service.issue(mock_conn, "patient-1", issued_by="nurse-7")

        metadata = mock_audit.record.await_args.args[1].metadata
        assert metadata["actor_display"] == "Nurse Jackie"
        assert metadata["actor_role"] == "nurse"


class TestRedeem:
    @pytest.fixture
    def profiles(self):
        return StaticProfileSource(
            {"patient-1": EmergencyProfile("patient-1", blood_type="O-", allergies=["penicillin"])}
        )

    @pytest.fixture
    def service(self, mock_audit, clock, profiles):
        temporary = TemporaryPermissionManager(mock_audit, clock=clock)
        return EmergencyTokenService(mock_audit, temporary, clock=clock, profiles=profiles)

    async def test_successful_redemption(self, service, mock_conn, mock_audit, clock):
        row = token_row(clock.now())
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        handle = await service.redeem(mock_conn, "k7qx2mpa9rtd", "dr-a", justification=WHY)

        assert handle.patient_id == "patient-1"
        assert handle.actor_id == "dr-a"
        assert handle.token_id == row["token_id"]
        assert handle.permission.scope == TemporaryScope.FULL
        assert handle.permission.source == PermissionSource.EMERGENCY
        assert handle.expires_at == clock.now() + timedelta(minutes=60)
        assert recorded_actions(mock_audit) == [AuditAction.GRANT, AuditAction.EMERGENCY_REDEEM]

    async def test_claim_is_a_single_conditional_update(self, service, mock_conn, clock):
        row = token_row(clock.now())
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)

        claim_query = mock_conn.fetchrow.await_args_list[1].args[0]
        assert claim_query.strip().startswith("UPDATE emergency_access_tokens")
        assert "WHERE token_id = $1 AND is_active AND expires_at > $2" in claim_query

    async def test_lookup_uses_hash_of_normalized_code(self, service, mock_conn, clock):
        row = token_row(clock.now())
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        link = "https://portal.example.org/emergency/k7qx-2mpa-9rtd"
        await service.redeem(mock_conn, link, "dr-a", justification=WHY)

        assert mock_conn.fetchrow.await_args_list[0].args[1] == hash_token(CODE)

    async def test_summary_handle_fetches_profile(self, service, mock_conn, clock):
        row = token_row(clock.now())
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        handle = await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)
        profile = await handle.fetch_profile()

        assert profile.blood_type == "O-"
        assert profile.allergies == ["penicillin"]

    async def test_summary_handle_refuses_after_session_ends(self, service, mock_conn, clock):
        row = token_row(clock.now())
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        handle = await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)
        clock.advance(timedelta(minutes=61))

        with pytest.raises(AccessDeniedError, match="expired"):
            await handle.fetch_profile()

    async def test_unknown_code(self, service, mock_conn, mock_audit):
        mock_conn.fetchrow.return_value = None

        with pytest.raises(InvalidTokenError) as exc_info:
            await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)

        assert exc_info.value.reason == "not_found"
        assert str(exc_info.value) == INVALID_TOKEN_MESSAGE
        mock_audit.record.assert_not_awaited()

    async def test_malformed_code_never_reaches_storage(self, service, mock_conn):
        with pytest.raises(InvalidTokenError):
            await service.redeem(mock_conn, "not a code", "dr-a", justification=WHY)
        mock_conn.fetchrow.assert_not_awaited()

    async def test_used_code_rejected_and_audited(self, service, mock_conn, mock_audit, clock):
        mock_conn.fetchrow.return_value = token_row(
            clock.now(), is_active=False, used_at=clock.now(), used_by="dr-a"
        )

        with pytest.raises(InvalidTokenError) as exc_info:
            await service.redeem(mock_conn, CODE, "dr-b", justification=WHY)

        assert exc_info.value.reason == "inactive"
        assert not isinstance(exc_info.value, ConflictError)
        event = mock_audit.record.await_args.args[1]
        assert event.action == AuditAction.EMERGENCY_REDEEM_DENIED
        assert event.success is False
        assert event.actor_id == "dr-b"
        assert event.metadata["reason"] == "inactive"

    async def test_expired_but_active_code_rejected(self, service, mock_conn, mock_audit, clock):
        mock_conn.fetchrow.return_value = token_row(clock.now(), expires_in=timedelta(seconds=-1))

        with pytest.raises(InvalidTokenError) as exc_info:
            await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)

        assert exc_info.value.reason == "expired"
        assert mock_conn.fetchrow.await_count == 1
        assert recorded_actions(mock_audit) == [AuditAction.EMERGENCY_REDEEM_DENIED]

    async def test_code_expiring_exactly_now_rejected(self, service, mock_conn, clock):
        mock_conn.fetchrow.return_value = token_row(clock.now(), expires_in=timedelta(0))

        with pytest.raises(InvalidTokenError):
            await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)

    async def test_lost_race_raises_conflict(self, service, mock_conn, mock_audit, clock):
        mock_conn.fetchrow.side_effect = [token_row(clock.now()), None]

        with pytest.raises(ConflictError) as exc_info:
            await service.redeem(mock_conn, CODE, "dr-b", justification=WHY)

        assert exc_info.value.reason == "already_used"
        assert str(exc_info.value) == INVALID_TOKEN_MESSAGE
        assert recorded_actions(mock_audit) == [AuditAction.EMERGENCY_REDEEM_DENIED]

    async def test_session_length_comes_from_the_code(self, service, mock_conn, clock):
        row = token_row(clock.now(), session_duration=timedelta(minutes=90))
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        handle = await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)

        assert handle.expires_at == clock.now() + timedelta(minutes=90)

    async def test_justification_and_level_in_audit(self, service, mock_conn, mock_audit, clock):
        row = token_row(clock.now())
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        await service.redeem(
            mock_conn, CODE, "dr-a", justification=f"  {WHY}  ", emergency_level="urgent"
        )

        event = mock_audit.record.await_args.args[1]
        assert event.action == AuditAction.EMERGENCY_REDEEM
        assert event.metadata["justification"] == WHY
        assert event.metadata["emergency_level"] == "urgent"

    async def test_default_emergency_level_is_critical(self, service, mock_conn, mock_audit, clock):
        row = token_row(clock.now())
        mock_conn.fetchrow.side_effect = [row, {"token_id": row["token_id"]}]

        await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)

        assert mock_audit.record.await_args.args[1].metadata["emergency_level"] == "critical"

    @pytest.mark.parametrize("justification", ["", "   ", "need access", "x" * 19])
    async def test_short_justification_rejected(self, service, mock_conn, justification):
        with pytest.raises(ValidationError, match="at least 20 characters"):
            await service.redeem(mock_conn, CODE, "dr-a", justification=justification)
        mock_conn.fetchrow.assert_not_awaited()

    async def test_justification_minimum_is_configurable(self, mock_audit, mock_conn, clock):
        config = AccessConfig(min_justification_length=40)
        temporary = TemporaryPermissionManager(mock_audit, clock=clock)
        service = EmergencyTokenService(mock_audit, temporary, clock=clock, config=config)

        with pytest.raises(ValidationError, match="at least 40 characters"):
            await service.redeem(mock_conn, CODE, "dr-a", justification=WHY)

    async def test_unknown_emergency_level_rejected(self, service, mock_conn):
        with pytest.raises(ValidationError, match="emergency level"):
            await service.redeem(
                mock_conn, CODE, "dr-a", justification=WHY, emergency_level="mild"
            )
        mock_conn.fetchrow.assert_not_awaited()

    async def test_empty_actor_rejected(self, service, mock_conn):
        with pytest.raises(ValidationError, match="actor_id"):
            await service.redeem(mock_conn, CODE, "", justification=WHY)


class TestRevokeAndSweep:
    @pytest.fixture
    def service(self, mock_audit, clock):
        temporary = TemporaryPermissionManager(mock_audit, clock=clock)
        return EmergencyTokenService(mock_audit, temporary, clock=clock)

    async def test_revoke_unused_code(self, service, mock_conn, mock_audit):
        mock_conn.fetchrow.return_value = {"patient_id": "patient-1"}

        assert await service.revoke(mock_conn, uuid4(), "patient-1") is True
        event = mock_audit.record.await_args.args[1]
        assert event.action == AuditAction.REVOKE
        assert event.metadata["kind"] == "emergency_token"

    async def test_revoke_already_used_code(self, service, mock_conn, mock_audit):
        mock_conn.fetchrow.return_value = None
        mock_conn.fetchval.return_value = True

        assert await service.revoke(mock_conn, uuid4(), "patient-1") is False
        mock_audit.record.assert_not_awaited()

    async def test_revoke_unknown_code(self, service, mock_conn):
        mock_conn.fetchrow.return_value = None
        mock_conn.fetchval.return_value = False

        with pytest.raises(NotFoundError):
            await service.revoke(mock_conn, uuid4(), "patient-1")

    async def test_list_active_excludes_lapsed_in_query(self, service, mock_conn, clock):
        mock_conn.fetch.return_value = [token_row(clock.now())]

        tokens = await service.list_active(mock_conn, "patient-1")

        assert len(tokens) == 1
        assert tokens[0].token is None
        assert "is_active AND expires_at > $2" in mock_conn.fetch.await_args.args[0]

    async def test_sweep_expired(self, service, mock_conn, mock_audit, clock):
        now = clock.now()
        mock_conn.fetch.return_value = [
            {"token_id": uuid4(), "patient_id": "patient-2", "expires_at": now},
            {"token_id": uuid4(), "patient_id": "patient-1", "expires_at": now},
        ]

        assert await service.sweep_expired(mock_conn, batch_size=10) == 2

        events = [c.args[1] for c in mock_audit.record.await_args_list]
        assert [e.action for e in events] == [AuditAction.EMERGENCY_EXPIRE] * 2
        assert [e.subject_patient_id for e in events] == ["patient-1", "patient-2"]
        assert mock_conn.fetch.await_args.args[2] == 10
