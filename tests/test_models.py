import pytest

from stackdeployer.errors import InvalidRequestError
from stackdeployer.models import BuildJob, DeploymentRequest, ExecutionContext, Target, region_to_code


@pytest.mark.parametrize(
    "region, code",
    [
        ("us-east-1", "use1"),
        ("eu-central-1", "euc1"),
        ("ap-southeast-2", "apse2"),
        ("eu-west-3", "euw3"),
        ("us-gov-west-1", "usgw1"),
    ],
)
def test_region_to_code(region, code):
    assert region_to_code(region) == code


def test_region_to_code_rejects_garbage():
    with pytest.raises(ValueError):
        region_to_code("europe")


def test_request_from_dict_keeps_group_order():
    request = DeploymentRequest.from_dict(
        {
            "version": "v1",
            "cmd": "deploy",
            "appGroups": [
                [{"app": "a", "regcode": "us"}],
                [{"app": "b", "regcode": "eu"}, {"app": "c", "regcode": "eu"}],
            ],
        }
    )

    assert request.app_groups == (
        (Target("a", "us"),),
        (Target("b", "eu"), Target("c", "eu")),
    )
    assert request.target_count == 3
    assert DeploymentRequest.from_dict(request.to_dict()) == request


def test_request_fingerprint_tracks_content():
    base = {"version": "v1", "cmd": "deploy", "appGroups": [[{"app": "a", "regcode": "us"}]]}
    changed = {"version": "v1", "cmd": "deploy", "appGroups": [[{"app": "a", "regcode": "eu"}]]}

    assert DeploymentRequest.from_dict(base).fingerprint() == DeploymentRequest.from_dict(dict(base)).fingerprint()
    assert DeploymentRequest.from_dict(base).fingerprint() != DeploymentRequest.from_dict(changed).fingerprint()


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"cmd": "deploy"}, "version"),
        ({"version": "v1"}, "cmd"),
        ({"version": "v1", "cmd": "deploy", "appGroups": {}}, "must be a list"),
        ({"version": "v1", "cmd": "deploy", "appGroups": [[]]}, "non-empty"),
        ({"version": "v1", "cmd": "deploy", "appGroups": [[{"regcode": "us"}]]}, "missing `app`"),
        ({"version": "v1", "cmd": "deploy", "appGroups": [[{"app": "a"}]]}, "missing `regcode`"),
        (
            {
                "version": "v1",
                "cmd": "deploy",
                "appGroups": [[{"app": "a", "regcode": "us"}], [{"app": "a", "regcode": "us"}]],
            },
            "more than once",
        ),
    ],
)
def test_request_from_dict_rejects_malformed_input(payload, message):
    with pytest.raises(InvalidRequestError, match=message):
        DeploymentRequest.from_dict(payload)


def test_build_job_log_name_and_env():
    request = DeploymentRequest(version="v1", command="deploy")
    job = BuildJob.for_target(Target("api", "euc1"), request, image="registry.example.com/deployer")

    assert job.context is ExecutionContext.READ_ONLY
    assert job.image_ref == "registry.example.com/deployer:v1"
    assert job.log_name("prod") == "deploy-api-prod-euc1.txt"
    assert job.env("prod") == {
        "DEPLOYER_IMAGE": "registry.example.com/deployer",
        "STAGE": "prod",
        "VERSION": "v1",
        "CMD": "deploy",
        "APP": "api",
        "REGCODE": "euc1",
    }
