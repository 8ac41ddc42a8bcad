"""Register the simulated users and create chats between them.

Registration is idempotent: a user that already exists is counted and kept.
Each user then creates up to ``max_chat_peers`` chats with random other users,
pausing between creations to avoid rate spikes.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass

import structlog

from chatload.backend.client import BackendClient
from chatload.backend.models import AuthFailure, BackendError
from chatload.config import Settings

logger = structlog.get_logger()


@dataclass
class ProvisionReport:
    registered: int = 0
    already_present: int = 0
    registration_errors: int = 0
    signin_errors: int = 0
    chats_created: int = 0
    chat_creation_errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


async def provision(
    backend: BackendClient,
    settings: Settings,
    *,
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ProvisionReport:
    rng = rng or random.Random()
    report = ProvisionReport()
    semaphore = asyncio.Semaphore(max(1, settings.provision_concurrency))
    total = settings.total_users

    async def _one(vu: int) -> None:
        async with semaphore:
            await _provision_user(backend, settings, vu, report, rng, sleep)

    logger.info("provisioning_started", total_users=total, max_chat_peers=settings.max_chat_peers)
    await asyncio.gather(*(_one(vu) for vu in range(1, total + 1)))
    logger.info("provisioning_complete", **report.as_dict())
    return report


async def _provision_user(
    backend: BackendClient,
    settings: Settings,
    vu: int,
    report: ProvisionReport,
    rng: random.Random,
    sleep: Callable[[float], Awaitable[None]],
) -> None:
    username = settings.username_for(vu)
    try:
        created = await backend.register_user(username, settings.password)
    except BackendError as exc:
        report.registration_errors += 1
        logger.warning("register_failed", username=username, error=str(exc))
        return
    if created:
        report.registered += 1
    else:
        report.already_present += 1

    try:
        credentials = await backend.sign_in(username, settings.password)
    except AuthFailure as exc:
        report.signin_errors += 1
        logger.warning("signin_failed", username=username, error=str(exc))
        return

    total = settings.total_users
    chats_to_create = min(settings.max_chat_peers, max(0, total - 1))
    pause = settings.chat_create_pause_ms / 1000.0
    for _ in range(chats_to_create):
        peer = rng.randint(1, total - 1)
        if peer >= vu:
            peer += 1
        peer_name = settings.username_for(peer)
        try:
            await backend.create_chat(
                credentials.auth_token, f"Chat-{vu}-{peer}", [username, peer_name]
            )
            report.chats_created += 1
        except BackendError as exc:
            report.chat_creation_errors += 1
            logger.warning("create_chat_failed", username=username, peer=peer_name, error=str(exc))
        if pause > 0:
            await sleep(pause)

    logger.debug("user_provisioned", username=username)
