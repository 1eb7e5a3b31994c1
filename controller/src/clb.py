from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from tencentcloud.clb.v20180317 import clb_client, models
from tencentcloud.common import credential
from tencentcloud.common.exception.tencent_cloud_sdk_exception import TencentCloudSDKException
from tencentcloud.common.profile.client_profile import ClientProfile
from tencentcloud.common.profile.http_profile import HttpProfile

LOGGER = logging.getLogger(__name__)

DEFAULT_REGION = "ap-beijing"
CLB_ENDPOINT = "clb.tencentcloudapi.com"


class ClbError(RuntimeError):
    """Raised when a CLB control-plane call fails or returns an unusable payload."""

    def __init__(self, operation: str, load_balancer_id: str, message: str) -> None:
        super().__init__(f"{operation} failed for load balancer {load_balancer_id}: {message}")
        self.operation = operation
        self.load_balancer_id = load_balancer_id


@dataclass(frozen=True)
class LiveTarget:
    port: int
    private_ip_addresses: tuple[str, ...]


@dataclass(frozen=True)
class LiveRule:
    location_id: str
    domain: str
    url: str
    targets: tuple[LiveTarget, ...]


@dataclass(frozen=True)
class LiveListener:
    """One listener of a load balancer as reported by ``DescribeTargets``."""

    listener_id: str
    port: int
    protocol: str
    rules: tuple[LiveRule, ...]


@dataclass(frozen=True)
class BatchTarget:
    """Single entry of a batch register/deregister request."""

    listener_id: str
    location_id: str
    port: int
    ip: str

    def to_request(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "ListenerId": self.listener_id,
            "Port": self.port,
            "EniIp": self.ip,
        }
        # Layer-4 listeners have no location; CLB rejects an empty LocationId.
        if self.location_id:
            entry["LocationId"] = self.location_id
        return entry


def _parse_target(raw: Mapping[str, Any]) -> LiveTarget:
    addresses = raw.get("PrivateIpAddresses") or []
    return LiveTarget(
        port=int(raw.get("Port") or 0),
        private_ip_addresses=tuple(str(address) for address in addresses if address),
    )


def _parse_rule(raw: Mapping[str, Any]) -> LiveRule:
    return LiveRule(
        location_id=str(raw.get("LocationId") or ""),
        domain=str(raw.get("Domain") or ""),
        url=str(raw.get("Url") or ""),
        targets=tuple(_parse_target(target) for target in raw.get("Targets") or []),
    )


def parse_listeners(payload: Mapping[str, Any]) -> list[LiveListener]:
    """Convert a serialized ``DescribeTargets`` response into :class:`LiveListener` objects."""
    listeners: list[LiveListener] = []
    for raw in payload.get("Listeners") or []:
        listeners.append(
            LiveListener(
                listener_id=str(raw.get("ListenerId") or ""),
                port=int(raw.get("Port") or 0),
                protocol=str(raw.get("Protocol") or ""),
                rules=tuple(_parse_rule(rule) for rule in raw.get("Rules") or []),
            )
        )
    return listeners


class ClbClient:
    """Thin wrapper over the Tencent Cloud CLB SDK client.

    Only the three calls the synchronizer needs are exposed.  SDK exceptions
    and malformed payloads are converted to :class:`ClbError` so callers can
    handle every control-plane failure through a single exception type.
    """

    def __init__(self, sdk_client: Any, region: str = DEFAULT_REGION) -> None:
        self.sdk_client = sdk_client
        self.region = region

    def _call(
        self,
        operation: str,
        load_balancer_id: str,
        request: Any,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        request.from_json_string(json.dumps(params))
        try:
            response = getattr(self.sdk_client, operation)(request)
        except TencentCloudSDKException as exc:
            raise ClbError(operation, load_balancer_id, str(exc)) from exc

        try:
            payload = json.loads(response.to_json_string())
        except (TypeError, ValueError) as exc:
            raise ClbError(operation, load_balancer_id, f"unparsable response: {exc}") from exc
        if not isinstance(payload, dict):
            raise ClbError(operation, load_balancer_id, "response is not a JSON object")
        return payload

    def describe_listeners(self, load_balancer_id: str) -> list[LiveListener]:
        """Return every listener of *load_balancer_id* with its rules and registered targets."""
        payload = self._call(
            "DescribeTargets",
            load_balancer_id,
            models.DescribeTargetsRequest(),
            {"LoadBalancerId": load_balancer_id},
        )
        try:
            listeners = parse_listeners(payload)
        except (TypeError, ValueError, AttributeError) as exc:
            raise ClbError(
                "DescribeTargets", load_balancer_id, f"malformed listener payload: {exc}"
            ) from exc
        LOGGER.debug(
            "Described %d listener(s) for load balancer %s", len(listeners), load_balancer_id
        )
        return listeners

    def _batch(
        self,
        operation: str,
        request: Any,
        load_balancer_id: str,
        targets: Iterable[BatchTarget],
    ) -> None:
        entries = [target.to_request() for target in targets]
        if not entries:
            return
        payload = self._call(
            operation,
            load_balancer_id,
            request,
            {"LoadBalancerId": load_balancer_id, "Targets": entries},
        )
        failed_listeners = payload.get("FailListenerIdSet") or []
        if failed_listeners:
            raise ClbError(
                operation,
                load_balancer_id,
                f"listeners rejected the batch: {', '.join(map(str, failed_listeners))}",
            )
        LOGGER.debug(
            "%s accepted %d target(s) on load balancer %s (request %s)",
            operation,
            len(entries),
            load_balancer_id,
            payload.get("RequestId", "<unknown>"),
        )

    def batch_register_targets(
        self, load_balancer_id: str, targets: Iterable[BatchTarget]
    ) -> None:
        self._batch(
            "BatchRegisterTargets",
            models.BatchRegisterTargetsRequest(),
            load_balancer_id,
            targets,
        )

    def batch_deregister_targets(
        self, load_balancer_id: str, targets: Iterable[BatchTarget]
    ) -> None:
        self._batch(
            "BatchDeregisterTargets",
            models.BatchDeregisterTargetsRequest(),
            load_balancer_id,
            targets,
        )


def build_clb_client_from_env(env: Mapping[str, str] | None = None) -> ClbClient:
    """Construct a :class:`ClbClient` from environment variables.

    Environment variables:
        ``CLOUD_TENCENT_SECRET_ID`` / ``CLOUD_TENCENT_SECRET_KEY``: required API credentials.
        ``TENCENT_REGION``: CLB region (``ap-beijing``).
    """
    values = env if env is not None else os.environ

    secret_id = values.get("CLOUD_TENCENT_SECRET_ID", "")
    secret_key = values.get("CLOUD_TENCENT_SECRET_KEY", "")
    if not secret_id or not secret_key:
        raise ValueError("CLOUD_TENCENT_SECRET_ID and CLOUD_TENCENT_SECRET_KEY must be set")

    region = values.get("TENCENT_REGION") or DEFAULT_REGION

    http_profile = HttpProfile()
    http_profile.endpoint = CLB_ENDPOINT
    client_profile = ClientProfile()
    client_profile.httpProfile = http_profile

    sdk_client = clb_client.ClbClient(
        credential.Credential(secret_id, secret_key), region, client_profile
    )
    LOGGER.info("Created CLB client for region %s", region)
    return ClbClient(sdk_client=sdk_client, region=region)
