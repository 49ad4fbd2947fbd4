"""Project introspection used to shape the workflow plan."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

FRONTEND_CONFIG_FILES = [
    "nuxt.config.ts",
    "nuxt.config.js",
    "next.config.js",
    "next.config.mjs",
    "vite.config.ts",
    "vite.config.js",
]
FRONTEND_DIRS = [
    "app/pages",
    "pages",
    "src/pages",
    "app/components",
    "components",
    "src/components",
]
FRONTEND_SUFFIXES = {".vue", ".tsx", ".jsx"}

TEST_DIRS = ["tests", "test", "__tests__", "spec"]
JS_FRAMEWORKS = ["vitest", "jest", "playwright", "cypress"]
PYTHON_PROJECT_FILES = ["pyproject.toml", "setup.cfg", "requirements.txt", "requirements-dev.txt"]
PYTHON_FRAMEWORKS = ["pytest", "behave"]

SCAN_DEPTH = 3
SKIP_DIRS = {".git", "node_modules", ".venv", "venv", "__pycache__", ".hive"}


@dataclass
class TestStrategy:
    """What testing the project already has"""
    __test__ = False  # not a pytest test class

    has_tests: bool = False
    frameworks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"has_tests": self.has_tests, "frameworks": list(self.frameworks)}


@dataclass
class EnvironmentReport:
    """Probe results the router plans with"""
    has_frontend: bool = False
    test_strategy: TestStrategy = field(default_factory=TestStrategy)

    @property
    def has_tests(self) -> bool:
        return self.test_strategy.has_tests


class EnvironmentProbe:
    """Detects frontend code and test setup under a project root"""

    def __init__(self, root: Path | None = None):
        self.root = root or Path.cwd()

    def probe(self) -> EnvironmentReport:
        return EnvironmentReport(
            has_frontend=self.detect_frontend(),
            test_strategy=self.detect_test_strategy(),
        )

    def detect_frontend(self) -> bool:
        if any((self.root / name).is_file() for name in FRONTEND_CONFIG_FILES):
            return True
        if any((self.root / name).is_dir() for name in FRONTEND_DIRS):
            return True
        return any(p.suffix in FRONTEND_SUFFIXES for p in self._walk_files())

    def detect_test_strategy(self) -> TestStrategy:
        frameworks: list[str] = []

        package_json = self.root / "package.json"
        if package_json.is_file():
            text = package_json.read_text(errors="replace")
            frameworks.extend(fw for fw in JS_FRAMEWORKS if fw in text)

        for name in PYTHON_PROJECT_FILES:
            path = self.root / name
            if not path.is_file():
                continue
            text = path.read_text(errors="replace")
            for fw in PYTHON_FRAMEWORKS:
                if fw in text and fw not in frameworks:
                    frameworks.append(fw)

        has_tests = any((self.root / name).is_dir() for name in TEST_DIRS)
        if not has_tests:
            has_tests = any(
                ".spec." in p.name or ".test." in p.name for p in self._walk_files()
            )

        logger.debug("Test strategy for %s: has_tests=%s frameworks=%s", self.root, has_tests, frameworks)
        return TestStrategy(has_tests=has_tests, frameworks=frameworks)

    def _walk_files(self) -> Iterator[Path]:
        """Files up to SCAN_DEPTH levels below the root."""
        stack = [(self.root, 1)]
        while stack:
            directory, depth = stack.pop()
            try:
                entries = list(directory.iterdir())
            except OSError as e:
                logger.debug("Skipping unreadable directory %s: %s", directory, e)
                continue
            for entry in entries:
                if entry.is_dir():
                    if depth < SCAN_DEPTH and entry.name not in SKIP_DIRS:
                        stack.append((entry, depth + 1))
                elif entry.is_file():
                    yield entry
