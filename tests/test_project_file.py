import pytest
import toml

from autoprov.src.core.errors import ConfigurationError
from autoprov.src.core.models import CodesignAssets, DistributionType, Platform
from autoprov.src.project.project_file import Project
from conftest import TEAM_ID, make_certificate, make_profile

PROJECT = f"""
team_id = "{TEAM_ID}"
platform = "tvos"
signing_managed_automatically = false
ui_test_bundle_ids = ["com.acme.app.uitests"]

[targets."com.acme.app".entitlements]
aps-environment = "development"

[targets."com.acme.app.widget"]
"""


@pytest.fixture
def project_path(tmp_path):
    path = tmp_path / "project.toml"
    path.write_text(PROJECT)
    return path


def test_app_layout(project_path):
    project = Project(project_path)
    layout = project.get_app_layout(include_ui_tests=True)

    assert project.platform() == Platform.TVOS
    assert not project.is_signing_managed_automatically()
    assert layout.team_id == TEAM_ID
    assert layout.entitlements_by_bundle_id == {
        "com.acme.app": {"aps-environment": "development"},
        "com.acme.app.widget": {},
    }
    assert layout.ui_test_bundle_ids == ["com.acme.app.uitests"]
    assert project.get_app_layout(include_ui_tests=False).ui_test_bundle_ids == []


def test_force_codesign_assets_writes_codesign_table(project_path):
    project = Project(project_path)
    certificate = make_certificate()
    assets = CodesignAssets(
        certificate=certificate,
        profiles_by_bundle_id={"com.acme.app": make_profile("P1", "com.acme.app", name="App")},
    )
    project.force_codesign_assets(DistributionType.AD_HOC, assets)

    written = toml.load(project_path)["codesign"]["ad-hoc"]
    assert written["identity"] == certificate.common_name
    assert written["certificate_serial"] == certificate.serial
    assert written["profiles"]["com.acme.app"] == {"uuid": "P1", "name": "App"}
    reloaded = Project(project_path).get_app_layout(False)
    assert reloaded.entitlements_by_bundle_id["com.acme.app"] == {"aps-environment": "development"}


def test_missing_managed_flag(tmp_path):
    path = tmp_path / "project.toml"
    path.write_text('[targets."com.acme.app"]\n')
    with pytest.raises(ConfigurationError):
        Project(path).is_signing_managed_automatically()
    assert Project(path).platform() == Platform.IOS


@pytest.mark.parametrize("content", ["team_id = \n", 'team_id = "T"\n', 'platform = "watchOS"\n[targets.a]\n'])
def test_invalid_projects(tmp_path, content):
    path = tmp_path / "project.toml"
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        Project(path).platform()
