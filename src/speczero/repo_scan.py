"""Static repository scanning: feature detection, tree rendering, key files.

Pure filesystem functions, no LLM and no network calls. Fully testable
with ``tmp_path`` fixtures.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .models import DetectedFeatures, FeatureFlag as F, RepoStructure, RepoType

if TYPE_CHECKING:
    from .context import SharedContext

logger = logging.getLogger("speczero.repo_scan")


# ---------------------------------------------------------------------------
# Filter sets
# ---------------------------------------------------------------------------

SKIP_DIRS: set[str] = {
    ".git", "node_modules", "vendor", "__pycache__", ".venv", "venv",
    "dist", "build", "coverage", ".next", ".nuxt", "target", ".tox",
}

TREE_SKIP_NAMES: set[str] = {".git", "node_modules", ".DS_Store", "__pycache__"}

EXTENSION_LANGUAGES: dict[str, str] = {
    ".ts": "typescript", ".tsx": "typescript",
    ".js": "javascript", ".jsx": "javascript", ".mjs": "javascript", ".cjs": "javascript",
    ".py": "python",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".swift": "swift",
    ".vue": "vue",
    ".svelte": "svelte",
}

MAX_LANGUAGE_DEPTH = 3
MAX_PATTERN_DEPTH = 2
PATTERN_SNIFF_BYTES = 1000

# npm package -> framework name
JS_FRAMEWORKS: dict[str, str] = {
    "express": "express",
    "fastify": "fastify",
    "hono": "hono",
    "koa": "koa",
    "@nestjs/core": "nest",
    "react": "react",
    "vue": "vue",
    "@angular/core": "angular",
    "next": "nextjs",
    "nuxt": "nuxt",
    "svelte": "svelte",
    "react-native": "react-native",
    "prisma": "prisma",
    "@prisma/client": "prisma",
}

# npm package -> feature flags it implies
JS_FEATURES: dict[str, tuple[str, ...]] = {
    "react": (F.HAS_REACT,),
    "vue": (F.HAS_VUE,),
    "@angular/core": (F.HAS_ANGULAR,),
    "prisma": (F.HAS_ORM, F.HAS_SQL_DB),
    "@prisma/client": (F.HAS_ORM, F.HAS_SQL_DB),
    "typeorm": (F.HAS_ORM, F.HAS_SQL_DB),
    "drizzle-orm": (F.HAS_ORM, F.HAS_SQL_DB),
    "mongoose": (F.HAS_NOSQL_DB,),
    "mongodb": (F.HAS_NOSQL_DB,),
    "pg": (F.HAS_SQL_DB,),
    "mysql2": (F.HAS_SQL_DB,),
    "better-sqlite3": (F.HAS_SQL_DB,),
    "@apollo/server": (F.HAS_GRAPHQL,),
    "graphql": (F.HAS_GRAPHQL,),
    "graphql-yoga": (F.HAS_GRAPHQL,),
    "socket.io": (F.HAS_WEBSOCKET,),
    "ws": (F.HAS_WEBSOCKET,),
    "@grpc/grpc-js": (F.HAS_GRPC,),
    "jsonwebtoken": (F.HAS_JWT, F.HAS_AUTH),
    "jose": (F.HAS_JWT, F.HAS_AUTH),
    "passport": (F.HAS_AUTH, F.HAS_OAUTH),
    "@auth/core": (F.HAS_AUTH, F.HAS_OAUTH),
    "bcrypt": (F.HAS_AUTH,),
    "bcryptjs": (F.HAS_AUTH,),
    "argon2": (F.HAS_AUTH,),
    "zustand": (F.HAS_STATE_MGMT,),
    "redux": (F.HAS_STATE_MGMT,),
    "@reduxjs/toolkit": (F.HAS_STATE_MGMT,),
    "mobx": (F.HAS_STATE_MGMT,),
    "jotai": (F.HAS_STATE_MGMT,),
    "recoil": (F.HAS_STATE_MGMT,),
    "react-router": (F.HAS_ROUTING,),
    "react-router-dom": (F.HAS_ROUTING,),
    "vue-router": (F.HAS_ROUTING,),
    "typescript": (F.HAS_TYPES,),
    "eslint": (F.HAS_LINTING,),
    "biome": (F.HAS_LINTING,),
    "jest": (F.HAS_TESTS,),
    "vitest": (F.HAS_TESTS,),
    "mocha": (F.HAS_TESTS,),
}

# Substring in a Python manifest -> feature flags it implies
PY_FEATURES: dict[str, tuple[str, ...]] = {
    "fastapi": (F.HAS_REST_API,),
    "flask": (F.HAS_REST_API,),
    "django": (F.HAS_REST_API, F.HAS_ORM, F.HAS_SQL_DB),
    "sqlalchemy": (F.HAS_ORM, F.HAS_SQL_DB),
    "alembic": (F.HAS_MIGRATIONS,),
    "pymongo": (F.HAS_NOSQL_DB,),
    "graphene": (F.HAS_GRAPHQL,),
    "strawberry-graphql": (F.HAS_GRAPHQL,),
    "websockets": (F.HAS_WEBSOCKET,),
    "grpcio": (F.HAS_GRPC,),
    "pyjwt": (F.HAS_JWT, F.HAS_AUTH),
    "pytest": (F.HAS_TESTS,),
    "mypy": (F.HAS_TYPES,),
    "ruff": (F.HAS_LINTING,),
}

PY_FRAMEWORKS: tuple[str, ...] = ("fastapi", "flask", "django")

SOURCE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # API
    (re.compile(r"@(Get|Post|Put|Delete|Patch)\(", re.I), F.HAS_REST_API),
    (re.compile(r"router\.(get|post|put|delete|patch)\(", re.I), F.HAS_REST_API),
    (re.compile(r"app\.(get|post|put|delete|patch)\(", re.I), F.HAS_REST_API),
    (re.compile(r"\.get\s*\(\s*['\"`]/"), F.HAS_REST_API),
    (re.compile(r"Query|Mutation|Subscription\s*[({]", re.I), F.HAS_GRAPHQL),
    (re.compile(r"WebSocket|\.on\s*\(\s*['\"`]message", re.I), F.HAS_WEBSOCKET),
    # Auth
    (re.compile(r"authenticate|authorization|Bearer", re.I), F.HAS_AUTH),
    (re.compile(r"jwt\.(sign|verify|decode)", re.I), F.HAS_JWT),
    (re.compile(r"roles?\s*[=:]\s*\[|hasRole|canActivate|@Roles", re.I), F.HAS_RBAC),
    (re.compile(r"OAuth|passport|GoogleAuth|GithubAuth", re.I), F.HAS_OAUTH),
]

PATTERN_KEY_FILES: tuple[str, ...] = (
    "src/index.ts", "src/main.ts", "src/app.ts",
    "src/server.ts", "src/api/index.ts",
    "src/routes/index.ts", "src/controllers/index.ts",
    "app/api/route.ts", "pages/api/index.ts",
    "index.ts", "main.ts", "app.ts", "server.ts",
    "main.py", "app.py", "src/main.py",
)

PATTERN_SOURCE_EXTS: tuple[str, ...] = (".ts", ".js", ".py")

ENTRY_POINT_CANDIDATES: tuple[str, ...] = (
    "src/index.ts", "src/main.ts", "src/app.ts", "src/server.ts",
    "index.ts", "main.ts", "app.ts", "server.ts",
    "src/index.js", "src/main.js", "src/app.js", "src/server.js",
    "index.js", "main.js", "app.js", "server.js",
    "main.py", "app.py", "src/main.py", "manage.py",
    "src/main.rs", "src/lib.rs", "main.go",
)

# (marker file, package manager), first present wins
PACKAGE_MANAGER_MARKERS: tuple[tuple[str, str], ...] = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("poetry.lock", "poetry"),
    ("uv.lock", "uv"),
    ("requirements.txt", "pip"),
    ("pyproject.toml", "pip"),
    ("Cargo.toml", "cargo"),
    ("go.mod", "go"),
)

STRUCTURE_MARKERS: dict[str, tuple[str, ...]] = {
    "has_backend": (
        "src/server", "backend", "api", "src/handlers", "src/routes",
        "src/controllers", "src/api", "server",
    ),
    "has_frontend": (
        "src/components", "frontend", "app", "pages", "src/views", "src/ui",
        "src/app", "components", "src/client", "client",
    ),
    "has_tests": (
        "tests", "__tests__", "test", "spec", "src/__tests__", "e2e",
        "cypress", "playwright",
    ),
    "has_docs": ("docs", "documentation", "doc"),
    "has_docker": ("Dockerfile", "docker-compose.yml", "docker-compose.yaml", ".docker"),
    "has_cicd": (
        ".github/workflows", ".gitlab-ci.yml", "Jenkinsfile", ".circleci",
        "azure-pipelines.yml", "bitbucket-pipelines.yml",
    ),
    "is_monorepo": (
        "packages", "apps", "libs", "workspaces", "pnpm-workspace.yaml",
        "lerna.json", "nx.json", "turbo.json",
    ),
}

K8S_MARKERS: tuple[str, ...] = ("k8s", "kubernetes", "helm", "charts", "kustomization.yaml")
MIGRATION_MARKERS: tuple[str, ...] = ("migrations", "alembic", "prisma/migrations", "db/migrate")
SERVERLESS_MARKERS: tuple[str, ...] = ("serverless.yml", "serverless.yaml")


# ---------------------------------------------------------------------------
# Feature detection
# ---------------------------------------------------------------------------

class FeatureDetector:
    """Heuristic detector producing a DetectedFeatures snapshot."""

    def detect(self, repo_path: Path) -> DetectedFeatures:
        repo_path = Path(repo_path)
        features: set[str] = set()
        frameworks: set[str] = set()

        self._detect_from_package_files(repo_path, features, frameworks)
        structure = self.detect_structure(repo_path)
        languages = self.detect_languages(repo_path)
        self._detect_patterns(repo_path, features)
        self._detect_infra(repo_path, structure, features)

        repo_type = self.determine_repo_type(structure, features, frameworks)
        detected = DetectedFeatures(
            repo_type=repo_type,
            languages=frozenset(languages),
            frameworks=frozenset(frameworks),
            features=frozenset(features),
            structure=structure,
            package_manager=self.detect_package_manager(repo_path),
            entry_points=tuple(self.find_entry_points(repo_path)),
        )
        logger.info(
            "Detected %s repo: languages=%s frameworks=%s features=%d",
            repo_type.value, sorted(languages), sorted(frameworks), len(features),
        )
        return detected

    def _detect_from_package_files(self, repo_path: Path, features: set[str], frameworks: set[str]) -> None:
        pkg_path = repo_path / "package.json"
        if pkg_path.is_file():
            try:
                pkg = json.loads(pkg_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Could not parse %s: %s", pkg_path, e)
                pkg = {}
            if isinstance(pkg, dict):
                all_deps: dict[str, Any] = {}
                for key in ("dependencies", "devDependencies"):
                    section = pkg.get(key)
                    if isinstance(section, dict):
                        all_deps.update(section)
                    elif section is not None:
                        logger.warning("Ignoring non-object %s in %s", key, pkg_path)
                for dep in all_deps:
                    if dep in JS_FRAMEWORKS:
                        frameworks.add(JS_FRAMEWORKS[dep])
                    features.update(JS_FEATURES.get(dep, ()))
                if pkg.get("bin"):
                    features.add(F.HAS_BIN)

        for manifest in ("requirements.txt", "pyproject.toml"):
            path = repo_path / manifest
            if not path.is_file():
                continue
            content = _read_text(path).lower()
            for needle, flags in PY_FEATURES.items():
                if needle in content:
                    features.update(flags)
            frameworks.update(name for name in PY_FRAMEWORKS if name in content)
            if manifest == "pyproject.toml" and "[project.scripts]" in content:
                features.add(F.HAS_BIN)

        cargo = repo_path / "Cargo.toml"
        if cargo.is_file() and "[[bin]]" in _read_text(cargo):
            features.add(F.HAS_BIN)

    @staticmethod
    def detect_structure(repo_path: Path) -> RepoStructure:
        values = {
            field: any((repo_path / marker).exists() for marker in markers)
            for field, markers in STRUCTURE_MARKERS.items()
        }
        return RepoStructure(**values)

    @staticmethod
    def detect_languages(repo_path: Path) -> set[str]:
        """Languages by file extension, scanning at most MAX_LANGUAGE_DEPTH levels."""
        languages: set[str] = set()
        root_depth = len(repo_path.parts)
        for root, dirs, files in os.walk(repo_path):
            depth = len(Path(root).parts) - root_depth
            dirs[:] = [] if depth >= MAX_LANGUAGE_DEPTH else [
                d for d in dirs if not d.startswith(".") and d not in SKIP_DIRS
            ]
            for name in files:
                lang = EXTENSION_LANGUAGES.get(Path(name).suffix.lower())
                if lang:
                    languages.add(lang)
        return languages

    @staticmethod
    def _detect_patterns(repo_path: Path, features: set[str]) -> None:
        def sniff(text: str) -> None:
            for regex, flag in SOURCE_PATTERNS:
                if regex.search(text):
                    features.add(flag)

        for rel in PATTERN_KEY_FILES:
            path = repo_path / rel
            if path.is_file():
                sniff(_read_text(path))

        src = repo_path / "src"
        if not src.is_dir():
            return
        root_depth = len(src.parts)
        for root, dirs, files in os.walk(src):
            depth = len(Path(root).parts) - root_depth
            dirs[:] = [] if depth >= MAX_PATTERN_DEPTH else [
                d for d in dirs if not d.startswith(".") and d != "node_modules"
            ]
            for name in files:
                if name.endswith(PATTERN_SOURCE_EXTS):
                    sniff(_read_text(Path(root) / name, PATTERN_SNIFF_BYTES))

    @staticmethod
    def _detect_infra(repo_path: Path, structure: RepoStructure, features: set[str]) -> None:
        if structure.has_docker:
            features.add(F.HAS_DOCKER)
        if structure.has_cicd:
            features.add(F.HAS_CICD)
        if structure.has_tests:
            features.add(F.HAS_TESTS)
        if any((repo_path / m).exists() for m in K8S_MARKERS):
            features.add(F.HAS_K8S)
        if any((repo_path / m).exists() for m in MIGRATION_MARKERS):
            features.add(F.HAS_MIGRATIONS)
        if any((repo_path / m).exists() for m in SERVERLESS_MARKERS):
            features.add(F.HAS_SERVERLESS)

    @staticmethod
    def determine_repo_type(
        structure: RepoStructure, features: set[str] | frozenset[str], frameworks: set[str] | frozenset[str]
    ) -> RepoType:
        if structure.is_monorepo:
            return RepoType.MONOREPO
        if frameworks & {"react-native", "flutter", "expo"}:
            return RepoType.MOBILE
        if F.HAS_BIN in features and not structure.has_frontend and not structure.has_backend:
            return RepoType.CLI
        if structure.has_backend and structure.has_frontend:
            return RepoType.FULLSTACK

        has_api = bool(features & {F.HAS_REST_API, F.HAS_GRAPHQL, F.HAS_GRPC})
        has_db = bool(features & {F.HAS_SQL_DB, F.HAS_NOSQL_DB})
        has_backend_framework = bool(
            frameworks & {"express", "fastify", "nest", "hono", "koa", "fastapi", "flask", "django"}
        )
        if structure.has_backend or has_api or has_db or has_backend_framework:
            return RepoType.BACKEND
        if structure.has_frontend:
            return RepoType.FRONTEND
        return RepoType.LIBRARY

    @staticmethod
    def detect_package_manager(repo_path: Path) -> str | None:
        for marker, manager in PACKAGE_MANAGER_MARKERS:
            if (repo_path / marker).exists():
                return manager
        return None

    @staticmethod
    def find_entry_points(repo_path: Path) -> list[str]:
        return [rel for rel in ENTRY_POINT_CANDIDATES if (repo_path / rel).is_file()]


def _read_text(path: Path, limit: int | None = None) -> str:
    try:
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            return fh.read(limit) if limit else fh.read()
    except OSError as e:
        logger.debug("Could not read %s: %s", path, e)
        return ""


# ---------------------------------------------------------------------------
# Repository tree
# ---------------------------------------------------------------------------

def build_repo_tree(repo_path: Path, max_depth: int = 6) -> str:
    """Render *repo_path* as an indented tree, directories before their contents."""
    lines: list[str] = []

    def walk(current: Path, prefix: str, depth: int) -> None:
        try:
            entries = sorted(p for p in current.iterdir() if p.name not in TREE_SKIP_NAMES)
        except OSError as e:
            logger.debug("Cannot list %s: %s", current, e)
            return
        for index, entry in enumerate(entries):
            is_last = index == len(entries) - 1
            connector = "└── " if is_last else "├── "
            is_dir = entry.is_dir() and not entry.is_symlink()
            lines.append(f"{prefix}{connector}{entry.name}{'/' if is_dir else ''}")
            if is_dir and depth < max_depth and entry.name not in SKIP_DIRS:
                walk(entry, prefix + ("    " if is_last else "│   "), depth + 1)

    walk(Path(repo_path), "", 1)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Key files
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class KeyFileSpec:
    path: str
    max_chars: int = 5000
    description: str = ""


DEFAULT_KEY_FILES: dict[str, tuple[KeyFileSpec, ...]] = {
    "generic": (
        KeyFileSpec("package.json", 10000, "Node.js package manifest"),
        KeyFileSpec("pyproject.toml", 5000, "Python project config"),
        KeyFileSpec("README.md", 8000, "Project documentation"),
        KeyFileSpec("tsconfig.json", 3000, "TypeScript configuration"),
        KeyFileSpec(".env.example", 2000, "Environment variables template"),
        KeyFileSpec("docker-compose.yml", 5000, "Docker compose config"),
        KeyFileSpec("Dockerfile", 3000, "Docker build config"),
    ),
    "frontend": (
        KeyFileSpec("vite.config.ts", 3000, "Vite configuration"),
        KeyFileSpec("next.config.js", 3000, "Next.js configuration"),
        KeyFileSpec("nuxt.config.ts", 3000, "Nuxt configuration"),
        KeyFileSpec("tailwind.config.js", 3000, "Tailwind CSS config"),
    ),
    "backend": (
        KeyFileSpec("requirements.txt", 5000, "Python dependencies"),
        KeyFileSpec("go.mod", 3000, "Go module config"),
        KeyFileSpec("Cargo.toml", 3000, "Rust package manifest"),
        KeyFileSpec("prisma/schema.prisma", 15000, "Prisma database schema"),
        KeyFileSpec("drizzle.config.ts", 3000, "Drizzle ORM config"),
        KeyFileSpec("src/routes/index.ts", 5000, "API routes"),
        KeyFileSpec("src/api/index.ts", 5000, "API routes"),
    ),
    "library": (
        KeyFileSpec("rollup.config.js", 3000, "Rollup bundler config"),
        KeyFileSpec("esbuild.config.js", 3000, "esbuild config"),
        KeyFileSpec("setup.cfg", 3000, "Python setup config"),
    ),
    "mobile": (
        KeyFileSpec("app.json", 5000, "Expo/React Native config"),
        KeyFileSpec("pubspec.yaml", 5000, "Flutter dependencies"),
        KeyFileSpec("android/app/build.gradle", 5000, "Android build config"),
        KeyFileSpec("ios/Podfile", 3000, "iOS CocoaPods config"),
    ),
    "infra-as-code": (
        KeyFileSpec("main.tf", 10000, "Terraform main config"),
        KeyFileSpec("variables.tf", 5000, "Terraform variables"),
        KeyFileSpec("serverless.yml", 8000, "Serverless Framework config"),
        KeyFileSpec("pulumi.yaml", 5000, "Pulumi config"),
        KeyFileSpec("cdk.json", 3000, "AWS CDK config"),
    ),
    "monorepo": (
        KeyFileSpec("pnpm-workspace.yaml", 2000, "pnpm workspace config"),
        KeyFileSpec("lerna.json", 2000, "Lerna config"),
        KeyFileSpec("nx.json", 5000, "Nx workspace config"),
        KeyFileSpec("turbo.json", 5000, "Turborepo config"),
    ),
    "cli": (
        KeyFileSpec("src/main.rs", 3000, "Binary entry point"),
        KeyFileSpec("bin/cli.js", 3000, "CLI entry point"),
    ),
}

# Directory-wide patterns: (directory, file name inside each child dir)
GLOB_KEY_FILES: tuple[tuple[str, str, int], ...] = (
    ("packages", "package.json", 3000),
    ("apps", "package.json", 3000),
)
MAX_GLOB_MATCHES = 10


def key_files_for(repo_type: str) -> list[KeyFileSpec]:
    """Generic specs plus the ones for *repo_type*, de-duplicated by path."""
    seen: set[str] = set()
    specs: list[KeyFileSpec] = []
    for spec in (*DEFAULT_KEY_FILES["generic"], *DEFAULT_KEY_FILES.get(repo_type, ())):
        if spec.path not in seen:
            seen.add(spec.path)
            specs.append(spec)
    return specs


def load_key_files(context: "SharedContext", repo_path: Path, repo_type: str, max_chars: int | None = None) -> list[str]:
    """Load the key files for *repo_type* into *context*.

    ``max_chars`` caps every per-file budget. Returns the relative paths
    that were loaded.
    """
    repo_path = Path(repo_path)
    loaded: list[str] = []

    def add(rel: str, budget: int) -> None:
        path = repo_path / rel
        if not path.is_file():
            return
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Failed to read key file %s: %s", rel, e)
            return
        limit = min(budget, max_chars) if max_chars else budget
        context.add_key_file(rel, content, limit)
        loaded.append(rel)

    for spec in key_files_for(repo_type):
        add(spec.path, spec.max_chars)

    for directory, file_name, budget in GLOB_KEY_FILES:
        base = repo_path / directory
        if not base.is_dir():
            continue
        children = sorted(p.name for p in base.iterdir() if p.is_dir())
        for child in children[:MAX_GLOB_MATCHES]:
            add(f"{directory}/{child}/{file_name}", budget)

    logger.info("Loaded %d key files for %s repo", len(loaded), repo_type)
    return loaded
