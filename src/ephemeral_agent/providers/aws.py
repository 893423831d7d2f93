"""boto3-backed identity and compute adapters.

boto3 is synchronous, so every call goes through `asyncio.to_thread`. Native
`ClientError` codes are translated into the orchestrator's error taxonomy.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
import functools
import re
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from ephemeral_agent.enums import ResourceStatus
from ephemeral_agent.errors import (
    AuthDenied,
    AuthTransient,
    ProvisionAmbiguous,
    ProvisionError,
    ResourceNotFound,
    TeardownTransient,
    TeardownUnconfirmed,
)
from ephemeral_agent.providers.interfaces import AssumedRole
from ephemeral_agent.schema.models import ResourceSpec, ScopedCredential

ClientFactory = Callable[..., Any]

TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "InternalFailure",
        "IDPCommunicationError",
    }
)
QUOTA_CODES = frozenset(
    {
        "InstanceLimitExceeded",
        "VcpuLimitExceeded",
        "InsufficientInstanceCapacity",
        "MaxSpotInstanceCountExceeded",
    }
)
NOT_FOUND_CODES = frozenset({"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"})
LIVE_INSTANCE_STATES = ("pending", "running", "shutting-down", "stopping", "stopped")

_EC2_STATES: dict[str, ResourceStatus] = {
    "pending": ResourceStatus.PENDING,
    "running": ResourceStatus.RUNNING,
    "shutting-down": ResourceStatus.STOPPING,
    "stopping": ResourceStatus.STOPPING,
    "stopped": ResourceStatus.STOPPING,
    "terminated": ResourceStatus.TERMINATED,
}

_SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "ClientError")


def session_name(label: str) -> str:
    """STS session names allow `[\\w+=,.@-]` and 2 to 64 characters."""
    cleaned = _SESSION_NAME_INVALID.sub("-", label)[:64]
    return cleaned if len(cleaned) >= 2 else f"{cleaned}--"[:2]


def _client_config() -> Config:
    return Config(retries={"max_attempts": 3, "mode": "adaptive"})


async def _call(method: Callable[..., Any], **kwargs: Any) -> Any:
    return await asyncio.to_thread(functools.partial(method, **kwargs))


class StsIdentityProvider:
    """Assumes cross-account roles with STS `AssumeRole`."""

    def __init__(
        self,
        region: str | None = None,
        client: Any | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        factory = client_factory or boto3.client
        self._client = client or factory(
            "sts", region_name=region, config=_client_config()
        )

    async def assume_role(
        self,
        role_ref: str,
        session_label: str,
        external_id: str | None = None,
        duration_s: int | None = None,
    ) -> AssumedRole:
        params: dict[str, Any] = {
            "RoleArn": role_ref,
            "RoleSessionName": session_name(session_label),
        }
        if external_id:
            params["ExternalId"] = external_id
        if duration_s:
            params["DurationSeconds"] = int(duration_s)
        try:
            response = await _call(self._client.assume_role, **params)
        except ClientError as exc:
            code = error_code(exc)
            if code in TRANSIENT_CODES:
                raise AuthTransient(f"assume_role {role_ref}: {code}") from exc
            raise AuthDenied(f"assume_role {role_ref}: {code}") from exc
        except BotoCoreError as exc:
            raise AuthTransient(f"assume_role {role_ref}: {exc}") from exc
        credentials = response["Credentials"]
        return AssumedRole(
            access_key=credentials["AccessKeyId"],
            secret_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expires_at=credentials["Expiration"],
        )


class Ec2ComputeProvider:
    """One EC2 instance per lifecycle instance, found again through its tags."""

    name = "aws-ec2"

    def __init__(
        self,
        region: str | None = None,
        client_factory: ClientFactory | None = None,
        waiter_delay_s: int = 15,
    ) -> None:
        self.region = region
        self.waiter_delay_s = max(1, int(waiter_delay_s))
        self._client_factory = client_factory or boto3.client
        self._clients: dict[str, tuple[str, Any]] = {}

    def _client(self, credential: ScopedCredential) -> Any:
        # One client per trust domain, replaced when the credential is refreshed.
        key = f"{credential.access_key}:{credential.expires_at.isoformat()}"
        cached_key, client = self._clients.get(credential.target_account_ref, ("", None))
        if client is None or cached_key != key:
            client = self._client_factory(
                "ec2",
                region_name=self.region,
                aws_access_key_id=credential.access_key,
                aws_secret_access_key=credential.secret_key.get_secret_value(),
                aws_session_token=credential.session_token.get_secret_value(),
                config=_client_config(),
            )
            self._clients[credential.target_account_ref] = (key, client)
        return client

    @staticmethod
    def run_instances_params(
        spec: ResourceSpec,
        tags: Mapping[str, str],
        client_token: str,
        user_data: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "ImageId": spec.image_ref,
            "InstanceType": spec.size_class,
            "MinCount": 1,
            "MaxCount": 1,
            "ClientToken": client_token,
            "InstanceInitiatedShutdownBehavior": "terminate",
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": key, "Value": value} for key, value in tags.items()],
                }
            ],
        }
        if user_data:
            params["UserData"] = user_data
        if spec.identity_profile:
            key = "Arn" if spec.identity_profile.startswith("arn:") else "Name"
            params["IamInstanceProfile"] = {key: spec.identity_profile}
        network = spec.network
        if network.subnet_id:
            interface: dict[str, Any] = {
                "DeviceIndex": 0,
                "SubnetId": network.subnet_id,
                "AssociatePublicIpAddress": network.assign_public_ip,
            }
            if network.security_group_ids:
                interface["Groups"] = list(network.security_group_ids)
            params["NetworkInterfaces"] = [interface]
        elif network.security_group_ids:
            params["SecurityGroupIds"] = list(network.security_group_ids)
        return params

    async def create_resource(
        self,
        credential: ScopedCredential,
        spec: ResourceSpec,
        tags: Mapping[str, str],
        client_token: str,
        user_data: str | None = None,
    ) -> str:
        params = self.run_instances_params(spec, tags, client_token, user_data)
        try:
            response = await _call(self._client(credential).run_instances, **params)
        except ClientError as exc:
            code = error_code(exc)
            if code in QUOTA_CODES:
                raise ProvisionError("quota_exhausted", f"{code}: {exc}") from exc
            if code in TRANSIENT_CODES:
                raise ProvisionAmbiguous(f"run_instances: {code}") from exc
            raise ProvisionError(code, str(exc)) from exc
        except BotoCoreError as exc:
            raise ProvisionAmbiguous(f"run_instances: {exc}") from exc
        return str(response["Instances"][0]["InstanceId"])

    async def describe_resource(
        self, credential: ScopedCredential, resource_id: str
    ) -> ResourceStatus:
        try:
            response = await _call(
                self._client(credential).describe_instances, InstanceIds=[resource_id]
            )
        except ClientError as exc:
            code = error_code(exc)
            if code in NOT_FOUND_CODES:
                return ResourceStatus.NOT_FOUND
            raise TeardownTransient(f"describe_instances {resource_id}: {code}") from exc
        except BotoCoreError as exc:
            raise TeardownTransient(f"describe_instances {resource_id}: {exc}") from exc
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                state = instance.get("State", {}).get("Name", "")
                return _EC2_STATES.get(state, ResourceStatus.FAILED)
        return ResourceStatus.NOT_FOUND

    async def terminate_resource(
        self, credential: ScopedCredential, resource_id: str
    ) -> None:
        try:
            await _call(
                self._client(credential).terminate_instances, InstanceIds=[resource_id]
            )
        except ClientError as exc:
            code = error_code(exc)
            if code in NOT_FOUND_CODES:
                raise ResourceNotFound(resource_id) from exc
            if code in TRANSIENT_CODES:
                raise TeardownTransient(f"terminate_instances {resource_id}: {code}") from exc
            raise TeardownUnconfirmed(resource_id, 1, code) from exc
        except BotoCoreError as exc:
            raise TeardownTransient(f"terminate_instances {resource_id}: {exc}") from exc

    async def wait_terminated(
        self, credential: ScopedCredential, resource_id: str, timeout_s: float
    ) -> bool:
        waiter = self._client(credential).get_waiter("instance_terminated")
        max_attempts = max(1, int(timeout_s // self.waiter_delay_s))
        try:
            await _call(
                waiter.wait,
                InstanceIds=[resource_id],
                WaiterConfig={"Delay": self.waiter_delay_s, "MaxAttempts": max_attempts},
            )
        except WaiterError as exc:
            last = exc.last_response or {}
            if last.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return True
            return False
        except BotoCoreError as exc:
            raise TeardownTransient(f"wait for {resource_id}: {exc}") from exc
        return True

    async def find_resources(
        self, credential: ScopedCredential, tags: Mapping[str, str]
    ) -> dict[str, dict[str, str]]:
        filters = [{"Name": f"tag:{key}", "Values": [value]} for key, value in tags.items()]
        filters.append({"Name": "instance-state-name", "Values": list(LIVE_INSTANCE_STATES)})
        paginator = self._client(credential).get_paginator("describe_instances")

        def _collect() -> dict[str, dict[str, str]]:
            found: dict[str, dict[str, str]] = {}
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        found[instance["InstanceId"]] = {
                            tag["Key"]: tag["Value"] for tag in instance.get("Tags", [])
                        }
            return found

        try:
            return await asyncio.to_thread(_collect)
        except ClientError as exc:
            raise TeardownTransient(f"describe_instances by tag: {error_code(exc)}") from exc
        except BotoCoreError as exc:
            raise TeardownTransient(f"describe_instances by tag: {exc}") from exc
