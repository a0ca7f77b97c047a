"""
S3 client factory and Redshift COPY authorization clause.
"""
import boto3
from botocore.config import Config

from config import ReplicationConfig
from replica_etl.exceptions import ConfigError


def get_s3_client(config: ReplicationConfig, connect_timeout: int = 60, read_timeout: int = 300):
    """Create the S3 client used for exports. Falls back to the boto3 credential chain."""
    session = boto3.session.Session(
        aws_access_key_id=config.aws_access_key_id,
        aws_secret_access_key=config.aws_secret_access_key,
        region_name=config.aws_region,
    )
    return session.client(
        "s3",
        config=Config(connect_timeout=connect_timeout, read_timeout=read_timeout),
    )


def copy_authorization(config: ReplicationConfig) -> str:
    """
    Authorization clause for a Redshift COPY from S3.

    An IAM role wins over key credentials. Single quotes are doubled since
    the values end up inside SQL string literals.
    """
    if config.iam_role:
        return "IAM_ROLE '{}'".format(config.iam_role.replace("'", "''"))
    if config.aws_access_key_id and config.aws_secret_access_key:
        credentials = "aws_access_key_id={};aws_secret_access_key={}".format(
            config.aws_access_key_id, config.aws_secret_access_key
        )
        return "CREDENTIALS '{}'".format(credentials.replace("'", "''"))
    raise ConfigError("COPY needs either an IAM role or S3 export key credentials")
