import pytest

from stackdeployer.errors import RoleAssumptionError, SecretAccessError
from stackdeployer.models import ExecutionContext
from stackdeployer.services.access_policy import AccessProfile


def _profile(context, account_id="123456789012"):
    return AccessProfile.for_context(context, project="shop", stage="prod", account_id=account_id)


def test_read_only_profile_only_assumes_lookup_role():
    profile = _profile(ExecutionContext.READ_ONLY)

    assert profile.role_types == ("lookup",)
    assert profile.assume_role("lookup") == (
        "arn:aws:iam::123456789012:role/cdk-hnb659fds-lookup-role-123456789012-*"
    )
    with pytest.raises(RoleAssumptionError, match="deploy"):
        profile.assume_role("deploy")


def test_read_write_profile_assumes_deployment_roles():
    profile = _profile(ExecutionContext.READ_WRITE)

    assert set(profile.role_types) == {"deploy", "file-publishing", "image-publishing", "lookup"}
    assert len(profile.role_arn_patterns()) == 4
    assert profile.assume_role("image-publishing").endswith("cdk-hnb659fds-image-publishing-role-123456789012-*")


def test_both_profiles_read_only_the_age_key():
    for context in ExecutionContext:
        profile = _profile(context)
        assert profile.can_read_secret("shop/prod/age-key-a1B2c3")
        assert not profile.can_read_secret("shop/prod/database-password")
        assert not profile.can_read_secret("shop/dev/age-key-a1B2c3")


def test_read_only_profile_never_writes_secrets():
    profile = _profile(ExecutionContext.READ_ONLY)

    assert profile.can_write_secrets is False
    with pytest.raises(SecretAccessError, match="cannot be written from the READ_ONLY"):
        profile.check_secret_write("shop/prod/age-key-a1B2c3")


def test_read_write_profile_writes_within_project_stage():
    profile = _profile(ExecutionContext.READ_WRITE)

    profile.check_secret_write("shop/prod/api-token")
    assert not profile.can_write_secret("shop/staging/api-token")
    assert not profile.can_write_secret("other/prod/api-token")
    assert not profile.can_write_secret("shop/prod/../staging/api-token")


def test_profile_rejects_wildcard_scope():
    with pytest.raises(ValueError):
        AccessProfile.for_context(ExecutionContext.READ_WRITE, project="*", stage="prod")
    with pytest.raises(ValueError):
        AccessProfile.for_context(ExecutionContext.READ_ONLY, project="shop", stage="")


def test_profile_accepts_context_value():
    profile = AccessProfile.for_context("rw", project="shop", stage="prod")

    assert profile.context is ExecutionContext.READ_WRITE
    assert profile.account_id == "*"
