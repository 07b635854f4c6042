"""Shared constants for stackdeployer."""

LOGS_DIRECTORY = "logs"
OUTPUT_DIRECTORY = "output"
DEFAULT_CONFIG_FILE = ".stackdeployer.yml"

CDK_QUALIFIER = "hnb659fds"
READ_ONLY_ROLE_TYPES = ("lookup",)
READ_WRITE_ROLE_TYPES = ("deploy", "file-publishing", "image-publishing", "lookup")
AGE_KEY_SECRET_NAME = "age-key-*"

FORWARDED_CREDENTIAL_VARS = (
    "AWS_SESSION_TOKEN",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_DEFAULT_REGION",
    "AWS_REGION",
)
SESSION_CREDENTIAL_VARS = (
    "AWS_SESSION_TOKEN",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
)
