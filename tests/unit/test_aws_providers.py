from __future__ import annotations

from datetime import UTC, datetime, timedelta

import boto3
from botocore.stub import Stubber
from pydantic import SecretStr
import pytest

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
from ephemeral_agent.lifecycle.provisioner import correlation_tags
from ephemeral_agent.providers.aws import (
    LIVE_INSTANCE_STATES,
    Ec2ComputeProvider,
    StsIdentityProvider,
    session_name,
)
from ephemeral_agent.schema.models import NetworkPlacement, ScopedCredential
from tests.utils.lifecycle_harness import TARGET_ROLE, sample_spec

EXPIRES = datetime(2026, 6, 1, 13, 0, tzinfo=UTC)


def _client(service: str):
    return boto3.client(
        service,
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def _credential() -> ScopedCredential:
    return ScopedCredential(
        access_key="ASIATESTING",
        secret_key=SecretStr("secret"),
        session_token=SecretStr("token"),
        expires_at=EXPIRES,
        target_account_ref=TARGET_ROLE,
        session_label="ephemeral-test",
    )


@pytest.fixture
def ec2():
    client = _client("ec2")
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


def _provider(client) -> Ec2ComputeProvider:
    return Ec2ComputeProvider(
        region="us-east-1", client_factory=lambda *args, **kwargs: client, waiter_delay_s=1
    )


def test_session_name_is_sanitised() -> None:
    assert session_name("ephemeral-abc123") == "ephemeral-abc123"
    assert session_name("has spaces/and:colons") == "has-spaces-and-colons"
    assert len(session_name("x" * 100)) == 64
    assert len(session_name("x")) == 2


@pytest.mark.asyncio
async def test_assume_role_maps_credentials_and_errors() -> None:
    client = _client("sts")
    provider = StsIdentityProvider(client=client)
    with Stubber(client) as stubber:
        stubber.add_response(
            "assume_role",
            {
                "Credentials": {
                    "AccessKeyId": "ASIAEXAMPLE1234567",
                    "SecretAccessKey": "secret",
                    "SessionToken": "token",
                    "Expiration": EXPIRES,
                }
            },
            {
                "RoleArn": TARGET_ROLE,
                "RoleSessionName": "ephemeral-abc",
                "ExternalId": "ext-1",
                "DurationSeconds": 3600,
            },
        )
        stubber.add_client_error("assume_role", service_error_code="AccessDenied")
        stubber.add_client_error("assume_role", service_error_code="Throttling")

        assumed = await provider.assume_role(
            TARGET_ROLE, "ephemeral-abc", external_id="ext-1", duration_s=3600
        )
        with pytest.raises(AuthDenied):
            await provider.assume_role(TARGET_ROLE, "ephemeral-abc")
        with pytest.raises(AuthTransient):
            await provider.assume_role(TARGET_ROLE, "ephemeral-abc")
        stubber.assert_no_pending_responses()

    assert assumed.access_key == "ASIAEXAMPLE1234567"
    assert assumed.expires_at == EXPIRES


def test_run_instances_params_for_subnet_placement() -> None:
    spec = sample_spec(
        identity_profile="arn:aws:iam::111122223333:instance-profile/ci",
        network=NetworkPlacement(
            subnet_id="subnet-1", security_group_ids=("sg-1",), assign_public_ip=True
        ),
    )
    params = Ec2ComputeProvider.run_instances_params(
        spec, correlation_tags("corr"), "corr", user_data="#!/bin/sh"
    )
    assert params["ClientToken"] == "corr"
    assert params["IamInstanceProfile"] == {
        "Arn": "arn:aws:iam::111122223333:instance-profile/ci"
    }
    assert params["NetworkInterfaces"] == [
        {
            "DeviceIndex": 0,
            "SubnetId": "subnet-1",
            "AssociatePublicIpAddress": True,
            "Groups": ["sg-1"],
        }
    ]
    assert "SecurityGroupIds" not in params
    assert params["UserData"] == "#!/bin/sh"
    assert {"Key": "ephemeral-agent:lifecycle-id", "Value": "corr"} in params[
        "TagSpecifications"
    ][0]["Tags"]


def test_run_instances_params_without_subnet() -> None:
    spec = sample_spec(
        identity_profile="ci-profile",
        network=NetworkPlacement(security_group_ids=("sg-1", "sg-2")),
    )
    params = Ec2ComputeProvider.run_instances_params(spec, {}, "tok")
    assert params["IamInstanceProfile"] == {"Name": "ci-profile"}
    assert params["SecurityGroupIds"] == ["sg-1", "sg-2"]
    assert "NetworkInterfaces" not in params
    assert "UserData" not in params


@pytest.mark.asyncio
async def test_create_resource_returns_instance_id(ec2) -> None:
    client, stubber = ec2
    spec = sample_spec(boot_template=None)
    tags = correlation_tags("corr")
    stubber.add_response(
        "run_instances",
        {"Instances": [{"InstanceId": "i-0123456789abcdef0"}]},
        Ec2ComputeProvider.run_instances_params(spec, tags, "corr"),
    )
    resource_id = await _provider(client).create_resource(
        _credential(), spec, tags, client_token="corr"
    )
    assert resource_id == "i-0123456789abcdef0"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "expected"),
    [
        ("InstanceLimitExceeded", ProvisionError),
        ("RequestLimitExceeded", ProvisionAmbiguous),
        ("InvalidAMIID.NotFound", ProvisionError),
    ],
)
async def test_create_resource_error_mapping(ec2, code: str, expected: type) -> None:
    client, stubber = ec2
    stubber.add_client_error("run_instances", service_error_code=code)
    with pytest.raises(expected) as excinfo:
        await _provider(client).create_resource(
            _credential(), sample_spec(boot_template=None), {}, client_token="corr"
        )
    if code == "InstanceLimitExceeded":
        assert excinfo.value.code == "quota_exhausted"


@pytest.mark.asyncio
async def test_describe_resource_states(ec2) -> None:
    client, stubber = ec2
    stubber.add_response(
        "describe_instances",
        {
            "Reservations": [
                {"Instances": [{"InstanceId": "i-1", "State": {"Code": 32, "Name": "shutting-down"}}]}
            ]
        },
        {"InstanceIds": ["i-1"]},
    )
    stubber.add_client_error("describe_instances", service_error_code="InvalidInstanceID.NotFound")
    stubber.add_client_error("describe_instances", service_error_code="InternalError")
    provider = _provider(client)
    assert await provider.describe_resource(_credential(), "i-1") == ResourceStatus.STOPPING
    assert await provider.describe_resource(_credential(), "i-1") == ResourceStatus.NOT_FOUND
    with pytest.raises(TeardownTransient):
        await provider.describe_resource(_credential(), "i-1")


@pytest.mark.asyncio
async def test_terminate_resource_error_mapping(ec2) -> None:
    client, stubber = ec2
    stubber.add_response(
        "terminate_instances", {"TerminatingInstances": []}, {"InstanceIds": ["i-1"]}
    )
    stubber.add_client_error(
        "terminate_instances", service_error_code="InvalidInstanceID.NotFound"
    )
    stubber.add_client_error("terminate_instances", service_error_code="RequestLimitExceeded")
    stubber.add_client_error(
        "terminate_instances", service_error_code="OperationNotPermitted"
    )
    provider = _provider(client)
    await provider.terminate_resource(_credential(), "i-1")
    with pytest.raises(ResourceNotFound):
        await provider.terminate_resource(_credential(), "i-1")
    with pytest.raises(TeardownTransient):
        await provider.terminate_resource(_credential(), "i-1")
    with pytest.raises(TeardownUnconfirmed) as excinfo:
        await provider.terminate_resource(_credential(), "i-1")
    assert excinfo.value.last_error == "OperationNotPermitted"


@pytest.mark.asyncio
async def test_wait_terminated_uses_the_waiter(ec2) -> None:
    client, stubber = ec2
    stubber.add_response(
        "describe_instances",
        {
            "Reservations": [
                {"Instances": [{"InstanceId": "i-1", "State": {"Code": 48, "Name": "terminated"}}]}
            ]
        },
        {"InstanceIds": ["i-1"]},
    )
    assert await _provider(client).wait_terminated(_credential(), "i-1", timeout_s=30)


@pytest.mark.asyncio
async def test_find_resources_filters_by_tags_and_live_states(ec2) -> None:
    client, stubber = ec2
    tags = {"ephemeral-agent:managed-by": "ephemeral-agent"}
    stubber.add_response(
        "describe_instances",
        {
            "Reservations": [
                {
                    "Instances": [
                        {
                            "InstanceId": "i-1",
                            "Tags": [
                                {"Key": "ephemeral-agent:managed-by", "Value": "ephemeral-agent"},
                                {"Key": "ephemeral-agent:lifecycle-id", "Value": "corr"},
                            ],
                        }
                    ]
                }
            ]
        },
        {
            "Filters": [
                {"Name": "tag:ephemeral-agent:managed-by", "Values": ["ephemeral-agent"]},
                {"Name": "instance-state-name", "Values": list(LIVE_INSTANCE_STATES)},
            ]
        },
    )
    found = await _provider(client).find_resources(_credential(), tags)
    assert found == {
        "i-1": {
            "ephemeral-agent:managed-by": "ephemeral-agent",
            "ephemeral-agent:lifecycle-id": "corr",
        }
    }


def test_client_is_cached_per_account_until_credentials_change() -> None:
    created: list[str] = []

    def factory(service: str, **kwargs):
        created.append(kwargs["aws_access_key_id"])
        return object()

    provider = Ec2ComputeProvider(region="us-east-1", client_factory=factory)
    credential = _credential()
    first = provider._client(credential)
    assert provider._client(credential) is first
    refreshed = credential.model_copy(
        update={"access_key": "ASIANEW", "expires_at": EXPIRES + timedelta(hours=1)}
    )
    assert provider._client(refreshed) is not first
    assert created == ["ASIATESTING", "ASIANEW"]
