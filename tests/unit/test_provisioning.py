"""Tests for user registration and chat creation."""

import random
from unittest.mock import AsyncMock

import pytest

from chatload.backend.models import AuthFailure, BackendError, Credentials
from chatload.config import Settings
from chatload.provisioning import ProvisionReport, provision


def _settings(**overrides) -> Settings:
    values = {
        "api_key": "k",
        "total_users": 3,
        "max_chat_peers": 2,
        "chat_create_pause_ms": 0,
        "provision_concurrency": 1,
    }
    values.update(overrides)
    return Settings(**values)


def _backend() -> AsyncMock:
    backend = AsyncMock()
    backend.register_user.return_value = True
    backend.sign_in.side_effect = lambda username, password: Credentials(
        user_id=username, auth_token=f"Bearer {username}"
    )
    backend.create_chat.return_value = "chat"
    return backend


class TestProvision:
    @pytest.mark.asyncio
    async def test_registers_and_creates_chats(self):
        backend = _backend()
        report = await provision(backend, _settings(), rng=random.Random(1))

        assert report.registered == 3
        assert report.chats_created == 6
        assert backend.create_chat.await_count == 6
        for call in backend.create_chat.await_args_list:
            token, name, usernames = call.args
            owner, peer = usernames
            assert token == f"Bearer {owner}"
            assert owner != peer
            assert peer in {"user1", "user2", "user3"}
            assert name == f"Chat-{owner[4:]}-{peer[4:]}"

    @pytest.mark.asyncio
    async def test_existing_users_are_kept(self):
        backend = _backend()
        backend.register_user.side_effect = lambda username, password: username != "user2"

        report = await provision(backend, _settings(), rng=random.Random(2))

        assert report.registered == 2
        assert report.already_present == 1
        assert backend.sign_in.await_count == 3

    @pytest.mark.asyncio
    async def test_registration_error_skips_user(self):
        backend = _backend()

        def register(username, password):
            if username == "user1":
                raise BackendError("registerUser user1 returned 500", 500)
            return True

        backend.register_user.side_effect = register
        report = await provision(backend, _settings(), rng=random.Random(3))

        assert report.registration_errors == 1
        assert report.registered == 2
        assert backend.sign_in.await_count == 2
        assert report.chats_created == 4

    @pytest.mark.asyncio
    async def test_signin_and_chat_errors_counted(self):
        backend = _backend()

        def sign_in(username, password):
            if username == "user3":
                raise AuthFailure("signin returned 401", 401)
            return Credentials(user_id=username, auth_token=f"Bearer {username}")

        backend.sign_in.side_effect = sign_in
        backend.create_chat.side_effect = BackendError("createChat returned 500", 500)

        report = await provision(backend, _settings(), rng=random.Random(4))

        assert report.signin_errors == 1
        assert report.chats_created == 0
        assert report.chat_creation_errors == 4

    @pytest.mark.asyncio
    async def test_peer_count_capped_by_population(self):
        backend = _backend()
        report = await provision(backend, _settings(total_users=2, max_chat_peers=50))
        assert report.chats_created == 2

    @pytest.mark.asyncio
    async def test_single_user_creates_no_chats(self):
        backend = _backend()
        report = await provision(backend, _settings(total_users=1))
        assert report.registered == 1
        backend.create_chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pauses_between_chat_creations(self):
        pauses = []

        async def fake_sleep(seconds):
            pauses.append(seconds)

        await provision(
            _backend(), _settings(total_users=2, chat_create_pause_ms=250), sleep=fake_sleep
        )
        assert pauses == [0.25, 0.25]

    def test_report_as_dict(self):
        assert ProvisionReport(registered=2).as_dict()["registered"] == 2
