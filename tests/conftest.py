"""
Shared fixtures: moto-backed AWS, fake credentials and no real sleeping.
"""

import boto3
import pytest
from moto import mock_aws

from goat_teardown.config import Settings

REGION = "eu-west-3"
GOAT_TAG = {"Key": "Project", "Value": "AWSGoat"}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Clean environment variables before each test."""
    for var in ["TAG_KEY", "TAG_VALUE", "AWS_REGION", "ACCOUNT_ID", "AWS_PROFILE"]:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set fake AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def aws(aws_credentials):
    with mock_aws():
        yield boto3.Session(region_name=REGION)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Pauses and waiter delays return immediately."""
    monkeypatch.setattr("time.sleep", lambda seconds: None)


@pytest.fixture
def settings():
    return Settings(regions=[REGION])


@pytest.fixture
def vpc(aws):
    """A tagged lab VPC with two public subnets."""
    ec2 = aws.client("ec2")
    vpc_id = ec2.create_vpc(
        CidrBlock="10.0.0.0/16",
        TagSpecifications=[{"ResourceType": "vpc", "Tags": [GOAT_TAG, {"Key": "Name", "Value": "AWS_GOAT_VPC"}]}],
    )["Vpc"]["VpcId"]
    subnets = []
    for cidr, az in (("10.0.1.0/24", f"{REGION}a"), ("10.0.2.0/24", f"{REGION}b")):
        subnets.append(ec2.create_subnet(VpcId=vpc_id, CidrBlock=cidr, AvailabilityZone=az)["Subnet"]["SubnetId"])
    return {"vpc_id": vpc_id, "subnets": subnets}
