"""Tests for EnvironmentProbe"""
import json

from hive.orchestration.environment import EnvironmentProbe


def test_empty_project(tmp_path):
    report = EnvironmentProbe(tmp_path).probe()
    assert report.has_frontend is False
    assert report.has_tests is False
    assert report.test_strategy.frameworks == []


def test_frontend_from_config_file(tmp_path):
    (tmp_path / "nuxt.config.ts").write_text("export default {}")
    assert EnvironmentProbe(tmp_path).detect_frontend() is True


def test_frontend_from_component_files(tmp_path):
    nested = tmp_path / "web" / "widgets"
    nested.mkdir(parents=True)
    (nested / "Card.tsx").write_text("")
    assert EnvironmentProbe(tmp_path).detect_frontend() is True


def test_frontend_scan_skips_dependencies(tmp_path):
    vendored = tmp_path / "node_modules" / "lib"
    vendored.mkdir(parents=True)
    (vendored / "Thing.vue").write_text("")
    assert EnvironmentProbe(tmp_path).detect_frontend() is False


def test_js_test_frameworks(tmp_path):
    (tmp_path / "package.json").write_text(json.dumps({
        "devDependencies": {"vitest": "^1.0.0", "@playwright/test": "^1.40.0"},
    }))
    (tmp_path / "tests").mkdir()

    strategy = EnvironmentProbe(tmp_path).detect_test_strategy()
    assert strategy.has_tests is True
    assert strategy.frameworks == ["vitest", "playwright"]


def test_python_test_frameworks(tmp_path):
    (tmp_path / "pyproject.toml").write_text('[project.optional-dependencies]\ntest = ["pytest"]\n')
    (tmp_path / "requirements-dev.txt").write_text("pytest\nbehave\n")

    strategy = EnvironmentProbe(tmp_path).detect_test_strategy()
    assert strategy.frameworks == ["pytest", "behave"]
    assert strategy.to_dict() == {"has_tests": False, "frameworks": ["pytest", "behave"]}


def test_tests_detected_from_spec_files(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "cart.spec.ts").write_text("")
    assert EnvironmentProbe(tmp_path).detect_test_strategy().has_tests is True
