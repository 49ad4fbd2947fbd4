"""Default routing tables."""

# Explicit task `type` -> agent role. Tester types are disambiguated by title.
TYPE_ROLES = {
    "bug": "debugger",
    "debug": "debugger",
    "ui": "ui-designer",
    "design": "ui-designer",
    "ui_review": "ui-designer",
    "review": "reviewer",
    "code review": "reviewer",
    "security": "security",
    "security_review": "security",
    "vulnerability": "security",
    "architecture": "architect",
    "planning": "architect",
    "migration": "migrator",
    "database": "migrator",
    "schema": "migrator",
}

TEST_TYPES = {"test", "testing"}

# Title patterns used to pick a tester for an explicit test-typed task
TEST_TYPE_E2E_PATTERN = r"e2e|end.to.end|playwright|cypress|user journey"
TEST_TYPE_COMPONENT_PATTERN = r"component|unit test|vitest"

# File name globs, checked in order
UI_FILE_GLOBS = ["*.vue", "*.tsx", "*.jsx"]
TEST_FILE_GLOBS = [
    "*.spec.ts",
    "*.test.ts",
    "*.spec.js",
    "*.test.js",
    "test_*.py",
    "*_test.py",
]
E2E_FILE_GLOBS = ["*e2e*", "*playwright*"]

# Title keyword categories, checked in priority order
TITLE_KEYWORDS = [
    ("debugger", ["fix", "bug", "error", "crash", "broken", "debug"]),
    ("tester", ["test", "spec", "coverage"]),
    (
        "ui-designer",
        ["ui", "ux", "design", "style", "css", "layout", "responsive", "dark mode", "theme"],
    ),
    ("reviewer", ["review", "audit", "check"]),
    (
        "security",
        [
            "security",
            "vulnerability",
            "vulnerabilities",
            "injection",
            "xss",
            "csrf",
            "auth bypass",
            "penetration",
            "owasp",
            "cve",
        ],
    ),
    (
        "migrator",
        [
            "migration",
            "migrate",
            "schema",
            "database schema",
            "add column",
            "drop column",
            "alter table",
            "create table",
            "rollback",
            "prisma",
            "drizzle",
            "alembic",
            "knex",
        ],
    ),
    ("architect", ["architect", "design", "plan", "structure", "organize"]),
]

# Title patterns used to pick a tester once a title reads as testing work
TEST_TITLE_E2E_PATTERN = r"e2e|end.to.end|integration|playwright"
TEST_TITLE_COMPONENT_PATTERN = r"component|unit"

# Failure text buckets, checked in order
FAILURE_BUCKETS = [
    ("debugger", r"build|compile|syntax|parse|cannot find|undefined|type.*error"),
    ("debugger", r"test.*fail|assertion|expect"),
    ("retry", r"beads|task.*not|contract"),
]

DEFAULT_ROLE = "implementer"

# Test frameworks that warrant an e2e testing phase
E2E_FRAMEWORKS = {"playwright", "cypress", "behave"}

# Roles that may run side by side within one phase
PARALLEL_AGENTS = {
    "testing": ["tester", "e2e-tester", "component-tester"],
}

# Self-critique checklists per role: (check id, question)
CRITIQUE_CHECKLISTS = {
    "architect": [
        ("objective_clear", "Does the design address the original objective?"),
        ("tasks_actionable", "Are all tasks specific and actionable?"),
        ("dependencies_mapped", "Are task dependencies correctly identified?"),
        ("patterns_followed", "Does the design follow existing codebase patterns?"),
        ("edge_cases", "Are edge cases and error scenarios considered?"),
        ("scope_appropriate", "Is the scope appropriate (not too large, not too small)?"),
    ],
    "implementer": [
        ("builds", "Does the code compile/parse without errors?"),
        ("tests_pass", "Do existing tests still pass?"),
        ("matches_spec", "Does implementation match the task specification?"),
        ("patterns_followed", "Does code follow existing patterns in the codebase?"),
        ("edge_cases", "Are edge cases handled (null, empty, errors)?"),
        ("no_debug_code", "Is there no console.log/debug/TODO code left?"),
    ],
    "tester": [
        ("coverage", "Do tests cover the main functionality?"),
        ("edge_cases", "Are edge cases tested?"),
        ("tests_pass", "Do all new tests pass?"),
        ("readable", "Are test names descriptive?"),
        ("isolated", "Are tests isolated (no external dependencies)?"),
    ],
    "reviewer": [
        ("thorough", "Did I review all changed files?"),
        ("categorized", "Are findings properly categorized by severity?"),
        ("actionable", "Are findings specific and actionable?"),
        ("no_nitpicks", "Am I focusing on real issues, not style nitpicks?"),
        ("security_checked", "Did I check for security issues?"),
    ],
    "security": [
        ("injection", "Did I check for injection vulnerabilities?"),
        ("auth", "Did I verify authentication/authorization?"),
        ("data_exposure", "Did I check for data exposure risks?"),
        ("dependencies", "Did I check for vulnerable dependencies?"),
        ("actionable", "Are findings specific and actionable?"),
    ],
}
GENERIC_CHECKLIST = [
    ("objective_met", "Does the output meet the objective?"),
    ("quality", "Is the output quality acceptable?"),
    ("complete", "Is the work complete?"),
]

# Issue severities that add a security review phase to the run
SECURITY_TRIGGER_SEVERITIES = {"blocker", "critical", "high"}
