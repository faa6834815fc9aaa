"""Tech stack detection and the install / build command tables.

Detection looks only at manifest files in the project root.  The first
matching ecosystem wins, in the order of ``_MANIFEST_STACKS`` after the
Node and Python checks.
"""

from __future__ import annotations

import json
import logging

from sandcastle.orchestrator.models.build import TechStack

logger = logging.getLogger(__name__)

PACKAGE_JSON = "package.json"
REQUIREMENTS_TXT = "requirements.txt"
PYPROJECT_TOML = "pyproject.toml"

MANIFEST_FILES = (
    PACKAGE_JSON,
    REQUIREMENTS_TXT,
    PYPROJECT_TOML,
    "Cargo.toml",
    "go.mod",
    "pom.xml",
    "build.gradle",
    "composer.json",
    "Gemfile",
)

UNKNOWN_STACK = TechStack(language="unknown", framework="generic", package_manager="none")

# Checked in order; the first dependency present decides the framework.
_NODE_FRAMEWORKS = (
    ("next", "nextjs"),
    ("react", "react"),
    ("vue", "vue"),
    ("@angular/core", "angular"),
    ("svelte", "svelte"),
    ("express", "express"),
    ("@nestjs/core", "nestjs"),
)

_PYTHON_FRAMEWORKS = ("django", "flask", "fastapi")

_MANIFEST_STACKS = (
    ("Cargo.toml", TechStack(language="rust", framework="generic", package_manager="cargo")),
    ("go.mod", TechStack(language="go", framework="generic", package_manager="go")),
    ("pom.xml", TechStack(language="java", framework="maven", package_manager="maven")),
    ("build.gradle", TechStack(language="java", framework="gradle", package_manager="gradle")),
    ("composer.json", TechStack(language="php", framework="generic", package_manager="composer")),
    ("Gemfile", TechStack(language="ruby", framework="generic", package_manager="bundler")),
)

INSTALL_COMMANDS = {
    "npm": "npm install",
    "yarn": "yarn install",
    "pnpm": "pnpm install",
    "pip": "pip install -r requirements.txt",
    "poetry": "poetry install",
    "cargo": "cargo fetch",
    "go": "go mod download",
    "maven": "mvn install -DskipTests",
    "gradle": "./gradlew build -x test",
    "composer": "composer install",
    "bundler": "bundle install",
    "none": 'echo "No dependencies to install"',
}

UNKNOWN_INSTALL_COMMAND = 'echo "Unknown package manager"'

BUILD_COMMANDS: dict[str, str | None] = {
    "nextjs": "npm run build",
    "react": "npm run build",
    "vue": "npm run build",
    "angular": "npm run build",
    "svelte": "npm run build",
    "nestjs": "npm run build",
    "express": None,
    "django": "python manage.py collectstatic --noinput",
    "flask": None,
    "fastapi": None,
    "maven": "mvn package -DskipTests",
    "gradle": "./gradlew build -x test",
    "generic": None,
}


def get_install_command(stack: TechStack) -> str:
    return INSTALL_COMMANDS.get(stack.package_manager, UNKNOWN_INSTALL_COMMAND)


def get_build_command(stack: TechStack) -> str | None:
    """Return the build command, or ``None`` when the stack has no build step."""
    return BUILD_COMMANDS.get(stack.framework)


def detect_node_stack(package_json: str) -> TechStack | None:
    """Inspect package.json dependencies.  Returns ``None`` if the file is unparseable."""
    try:
        pkg = json.loads(package_json)
    except json.JSONDecodeError as exc:
        logger.warning("Could not parse package.json: %s", exc)
        return None
    if not isinstance(pkg, dict):
        return None

    deps: dict[str, object] = {}
    for key in ("dependencies", "devDependencies"):
        section = pkg.get(key)
        if isinstance(section, dict):
            deps.update(section)

    for dependency, framework in _NODE_FRAMEWORKS:
        if dependency in deps:
            return TechStack(language="nodejs", framework=framework, package_manager="npm")
    return TechStack(language="nodejs", framework="generic", package_manager="npm")


def detect_python_stack(requirements: str | None) -> TechStack:
    content = (requirements or "").lower()
    for framework in _PYTHON_FRAMEWORKS:
        if framework in content:
            return TechStack(language="python", framework=framework, package_manager="pip")
    return TechStack(language="python", framework="generic", package_manager="pip")


def detect_from_manifests(present: set[str], contents: dict[str, str]) -> TechStack:
    """Decide the stack from the manifest names in *present* and any file *contents* read.

    ``contents`` needs at most ``package.json`` and ``requirements.txt``.
    """
    if PACKAGE_JSON in present and PACKAGE_JSON in contents:
        stack = detect_node_stack(contents[PACKAGE_JSON])
        if stack is not None:
            return stack

    if REQUIREMENTS_TXT in present or PYPROJECT_TOML in present:
        return detect_python_stack(contents.get(REQUIREMENTS_TXT))

    for manifest, stack in _MANIFEST_STACKS:
        if manifest in present:
            return stack.model_copy()

    return UNKNOWN_STACK.model_copy()
