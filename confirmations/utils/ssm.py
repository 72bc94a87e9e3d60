# confirmations/utils/ssm.py
import os

import boto3

_REGION = os.getenv("AWS_DEFAULT_REGION", os.getenv("AWS_REGION", "us-east-1"))
# Parameters live under one path, e.g. /confirmations/DATA_DIR
_PREFIX = os.getenv("SSM_PREFIX", "/confirmations/")


def _ssm_client():
    return boto3.client("ssm", region_name=_REGION)


def param_name(name: str) -> str:
    return f"{_PREFIX.rstrip('/')}/{name}"


def get_param(name: str, decrypt: bool = True) -> str:
    """Read one parameter below SSM_PREFIX. AWS errors propagate to the caller."""
    resp = _ssm_client().get_parameter(Name=param_name(name), WithDecryption=decrypt)
    return resp["Parameter"]["Value"]
