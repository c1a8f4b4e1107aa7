"""Hetzner Cloud client scoped to blackbsd-managed servers."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..errors import DeadlineExceeded, ProviderError
from ..logging_config import get_logger
from ..result import Err, Ok
from ..retry import (
    ACTION_POLICY,
    CREATE_POLICY,
    STATUS_POLICY,
    BackoffPolicy,
    Permanent,
    retry_async,
)
from .schemas import (
    LABEL_SELECTOR,
    Action,
    ActionStatus,
    CreateServerOpts,
    RescueCredentials,
    Server,
    ServerStatus,
    SSHKey,
)

logger = get_logger(__name__)

API_URL = "https://api.hetzner.cloud/v1"
PAGE_SIZE = 50
REQUEST_TIMEOUT = 30.0
RESCUE_TYPE = "linux64"


class _StatusPending(Exception):
    """Server exists but has not reached the target status yet."""


class _ActionPending(Exception):
    """Action is still running."""


def _error_from_response(operation: str, resp: httpx.Response) -> ProviderError:
    code = None
    message = resp.reason_phrase or f"HTTP {resp.status_code}"
    try:
        error = resp.json().get("error") or {}
        code = error.get("code")
        message = error.get("message") or message
    except ValueError:
        pass

    transient = resp.status_code == httpx.codes.TOO_MANY_REQUESTS or resp.status_code >= 500  # noqa: PLR2004
    return ProviderError(
        operation,
        f"{message} ({code or resp.status_code})",
        status_code=resp.status_code,
        code=code,
        transient=transient,
    )


def _is_not_transient(exc: BaseException) -> bool:
    return not (isinstance(exc, ProviderError) and exc.transient)


class HetznerClient:
    """Client for the Hetzner Cloud API.

    Every listing is filtered by the ownership label, so the client never
    sees (or destroys) servers it did not create.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = API_URL,
        http_client: httpx.AsyncClient | None = None,
        create_policy: BackoffPolicy = CREATE_POLICY,
        status_policy: BackoffPolicy = STATUS_POLICY,
        action_policy: BackoffPolicy = ACTION_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=REQUEST_TIMEOUT,
        )
        self._create_policy = create_policy
        self._status_policy = status_policy
        self._action_policy = action_policy
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "HetznerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self, method: str, path: str, operation: str, **kwargs: Any
    ) -> dict[str, Any]:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ProviderError(operation, str(e) or type(e).__name__, transient=True) from e

        if resp.is_error:
            raise _error_from_response(operation, resp)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(
                operation, "invalid JSON response", status_code=resp.status_code
            ) from e

    # ── servers ───────────────────────────────────────────────────────

    async def list_servers(self) -> list[Server]:
        """List all managed servers, following pagination."""
        servers: list[Server] = []
        page: int | None = 1
        while page is not None:
            data = await self._request(
                "GET",
                "/servers",
                "list servers",
                params={"label_selector": LABEL_SELECTOR, "page": page, "per_page": PAGE_SIZE},
            )
            servers.extend(Server.model_validate(item) for item in data.get("servers", []))
            pagination = (data.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return servers

    async def get_server(self, server_id: int) -> Server | None:
        """Fetch a server by ID, ``None`` if the provider reports it missing."""
        try:
            data = await self._request("GET", f"/servers/{server_id}", f"get server {server_id}")
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise
        return Server.model_validate(data["server"])

    async def server_status(self, server_id: int) -> ServerStatus:
        server = await self.get_server(server_id)
        return server.status if server else ServerStatus.UNKNOWN

    async def create_server(self, opts: CreateServerOpts) -> Server:
        """Provision a labelled server.

        Rate limiting and 5xx responses are retried with backoff; validation
        failures (unknown image, type or location) are raised immediately.
        """
        payload = opts.to_payload()

        async def attempt() -> dict[str, Any]:
            return await self._request(
                "POST", "/servers", f"create server {opts.name}", json=payload
            )

        data = await retry_async(
            attempt,
            self._create_policy,
            is_permanent=_is_not_transient,
            sleep=self._sleep,
            name="create_server",
        )
        server = Server.model_validate(data["server"])
        logger.info("server_created", server_id=server.id, name=server.name)
        return server

    async def delete_server(self, server: Server) -> bool:
        """Delete a server. Returns False if it was already gone."""
        try:
            await self._request("DELETE", f"/servers/{server.id}", f"delete server {server.id}")
        except ProviderError as e:
            if e.is_not_found:
                logger.info("server_already_absent", server_id=server.id, name=server.name)
                return False
            raise

        logger.info("server_deleted", server_id=server.id, name=server.name)
        return True

    # ── rescue ────────────────────────────────────────────────────────

    async def enable_rescue(
        self, server: Server, ssh_key_ids: list[int]
    ) -> Ok[RescueCredentials] | Err:
        """Arm the rescue system for the next boot.

        Failure is an expected outcome here and is returned, not raised;
        callers must inspect ``result.ok`` before continuing.
        """
        try:
            data = await self._request(
                "POST",
                f"/servers/{server.id}/actions/enable_rescue",
                f"enable rescue for server {server.id}",
                json={"type": RESCUE_TYPE, "ssh_keys": ssh_key_ids},
            )
        except ProviderError as e:
            logger.warning("rescue_enable_failed", server_id=server.id, error=str(e))
            return Err(e)

        credentials = RescueCredentials(
            action=Action.model_validate(data["action"]),
            root_password=data.get("root_password"),
        )
        logger.info("rescue_enabled", server_id=server.id, action_id=credentials.action.id)
        return Ok(credentials)

    async def disable_rescue(self, server: Server) -> Action:
        data = await self._request(
            "POST",
            f"/servers/{server.id}/actions/disable_rescue",
            f"disable rescue for server {server.id}",
        )
        return Action.model_validate(data["action"])

    # ── power ─────────────────────────────────────────────────────────

    async def _run_server_action(self, server: Server, action: str, name: str) -> Action:
        data = await self._request(
            "POST", f"/servers/{server.id}/actions/{action}", f"{name} server {server.id}"
        )
        logger.info("server_action_completed", action=name, server_id=server.id, name=server.name)
        return Action.model_validate(data["action"])

    async def power_on(self, server: Server) -> Action:
        return await self._run_server_action(server, "poweron", "power on")

    async def power_off(self, server: Server) -> Action:
        return await self._run_server_action(server, "poweroff", "power off")

    async def reset(self, server: Server) -> Action:
        """Hardware reset; boots into rescue if it was armed."""
        return await self._run_server_action(server, "reset", "reset")

    # ── waiting ───────────────────────────────────────────────────────

    async def wait_for_server_status(self, server_id: int, target: ServerStatus) -> Server:
        """Poll until the server reports ``target``.

        A vanished server or a provider error ends the wait at once; only a
        not-yet-matching status is retried, until the policy deadline.
        """
        operation = f"wait for server {server_id} status {target.value}"
        last_seen = ServerStatus.UNKNOWN

        async def poll() -> Server:
            nonlocal last_seen
            try:
                server = await self.get_server(server_id)
            except ProviderError as e:
                raise Permanent(
                    ProviderError(operation, str(e), status_code=e.status_code, code=e.code)
                ) from e
            if server is None:
                raise Permanent(
                    ProviderError(operation, f"server {server_id}: not found", code="not_found")
                )
            last_seen = server.status
            if server.status != target:
                raise _StatusPending(f"server {server_id}: status {server.status.value}")
            return server

        try:
            server = await retry_async(
                poll, self._status_policy, sleep=self._sleep, name="wait_for_server_status"
            )
        except _StatusPending as e:
            raise DeadlineExceeded(
                operation,
                f"server {server_id}",
                last_seen.value,
                self._status_policy.max_elapsed or 0,
            ) from e

        logger.info("server_reached_status", server_id=server_id, status=target.value)
        return server

    async def wait_for_action(self, action: Action) -> Action:
        """Block until ``action`` succeeds; an errored action raises."""
        operation = f"wait for action {action.id}"
        last_seen = action

        async def poll() -> Action:
            nonlocal last_seen
            try:
                data = await self._request("GET", f"/actions/{action.id}", operation)
            except ProviderError as e:
                raise Permanent(e) from e
            current = Action.model_validate(data["action"])
            last_seen = current
            if current.status == ActionStatus.ERROR:
                detail = current.error.message if current.error else "unknown error"
                code = current.error.code if current.error else None
                raise Permanent(
                    ProviderError(operation, f"{current.command} failed: {detail}", code=code)
                )
            if current.status != ActionStatus.SUCCESS:
                raise _ActionPending(f"action {action.id}: {current.progress}%")
            return current

        if action.status == ActionStatus.SUCCESS:
            return action

        try:
            result = await retry_async(
                poll, self._action_policy, sleep=self._sleep, name="wait_for_action"
            )
        except _ActionPending as e:
            raise DeadlineExceeded(
                "wait for action",
                f"action {action.id}",
                f"{last_seen.status.value} {last_seen.progress}%",
                self._action_policy.max_elapsed or 0,
            ) from e

        logger.info("action_completed", action_id=action.id, command=result.command)
        return result

    # ── ssh keys ──────────────────────────────────────────────────────

    async def find_ssh_key_by_fingerprint(self, fingerprint: str) -> SSHKey | None:
        data = await self._request(
            "GET",
            "/ssh_keys",
            f"find ssh key {fingerprint}",
            params={"fingerprint": fingerprint},
        )
        keys = data.get("ssh_keys") or []
        return SSHKey.model_validate(keys[0]) if keys else None

    async def ensure_ssh_key(self, name: str, public_key: str) -> SSHKey:
        """Return the SSH key called ``name``, uploading ``public_key`` if absent."""
        data = await self._request(
            "GET", "/ssh_keys", f"get ssh key {name!r}", params={"name": name}
        )
        keys = data.get("ssh_keys") or []
        if keys:
            existing = SSHKey.model_validate(keys[0])
            logger.info("ssh_key_found", name=name, key_id=existing.id)
            return existing

        data = await self._request(
            "POST",
            "/ssh_keys",
            f"create ssh key {name!r}",
            json={"name": name, "public_key": public_key, "labels": {}},
        )
        created = SSHKey.model_validate(data["ssh_key"])
        logger.info("ssh_key_created", name=name, key_id=created.id)
        return created
