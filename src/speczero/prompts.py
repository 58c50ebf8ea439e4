"""Prompt text, section conventions, and step tuning constants.

Static data only. Each analysis prompt is keyed by the ``prompt_id`` the
planner assigns, so framework-specific variants can be swapped in without
touching agent ids.
"""

# ---------------------------------------------------------------------------
# Shared fragments
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a senior software architect writing architecture specifications for
an existing code repository. You only describe what the provided context
shows. When something is not visible in the context, say so instead of
guessing.

Write GitHub-flavoured markdown. Start the document with a
"## Executive Summary" section of at most five sentences: later analysis
steps only see that section, so it must stand on its own. Use ```mermaid
fenced blocks for diagrams."""

DIAGRAM_HINT = "Include these mermaid diagram types where they help: {diagrams}."

USER_PROMPT_TEMPLATE = """\
# Task: {title}

{instructions}

Project: {project_slug}
Repository type: {repo_type}
Run mode: {mode}
{diagram_hint}

{audit_note}
# Context

{context}
"""

AUDIT_NOTE = """\
Specs for this repository already exist. Focus on what changed: flag
statements in the previous analysis results that no longer match the code."""

# ---------------------------------------------------------------------------
# Analysis prompts, keyed by prompt_id: (title, instructions)
# ---------------------------------------------------------------------------

PROMPTS: dict[str, tuple[str, str]] = {
    "analysis/overview": (
        "System Overview",
        "Describe the purpose of the system, its main capabilities, the actors "
        "that use it and the external systems it talks to.",
    ),
    "analysis/architecture": (
        "Architecture",
        "Describe the high-level architecture: layers, runtime processes, "
        "major components and how requests flow between them.",
    ),
    "analysis/entities": (
        "Domain Entities",
        "List the core domain entities, their key fields and their relationships.",
    ),
    "analysis/modules": (
        "Modules",
        "Map the source tree to logical modules. For each module give its "
        "responsibility, its public surface and what it depends on.",
    ),
    "analysis/modules-nextjs": (
        "Modules (Next.js)",
        "Map the Next.js app to modules: route segments, layouts, server and "
        "client components, and data-fetching boundaries.",
    ),
    "analysis/modules-nuxt": (
        "Modules (Nuxt)",
        "Map the Nuxt app to modules: pages, layouts, composables, plugins and "
        "server routes.",
    ),
    "analysis/modules-nestjs": (
        "Modules (NestJS)",
        "Map the NestJS app to its modules, controllers, providers and guards, "
        "and show how modules import one another.",
    ),
    "api/detect-endpoints": (
        "REST API",
        "List every HTTP endpoint with method, path, request and response "
        "shape, and the handler that serves it.",
    ),
    "api/detect-endpoints-express": (
        "REST API (Express)",
        "List every Express route with method, path, middleware chain and "
        "handler, including routers mounted on sub-paths.",
    ),
    "api/detect-endpoints-fastify": (
        "REST API (Fastify)",
        "List every Fastify route with method, path, schema and handler, "
        "including routes registered through plugins.",
    ),
    "api/detect-graphql": (
        "GraphQL API",
        "Describe the GraphQL schema: types, queries, mutations, subscriptions "
        "and the resolvers behind them.",
    ),
    "api/detect-websocket": (
        "WebSocket API",
        "Describe the real-time channels: connection setup, message types and "
        "their direction.",
    ),
    "data/detect-schema": (
        "Database",
        "Describe the persistence layer: databases, tables or collections, "
        "keys, indexes and relationships.",
    ),
    "data/detect-schema-prisma": (
        "Database (Prisma)",
        "Describe the Prisma schema: models, relations, enums and the datasource.",
    ),
    "data/detect-migrations": (
        "Migrations",
        "Summarise the migration history and how schema changes are applied.",
    ),
    "auth/detect-auth": (
        "Authentication",
        "Describe how users and services authenticate: credentials, tokens, "
        "sessions and their lifetimes.",
    ),
    "auth/detect-authz": (
        "Authorization",
        "Describe roles, permissions and where access checks are enforced.",
    ),
    "ui/detect-components": (
        "UI Components",
        "List the main UI components, their props and how they compose into pages.",
    ),
    "ui/analyze-state": (
        "Client State",
        "Describe the client-side state stores, what they hold and which "
        "components read or write them.",
    ),
    "ui/analyze-routing": (
        "Client Routing",
        "Describe the client-side routes, guards and navigation flow.",
    ),
    "integration/detect-services": (
        "Service Integrations",
        "Describe calls to external or internal services: protocol, purpose "
        "and failure handling.",
    ),
    "integration/dependencies": (
        "Dependencies",
        "Summarise third-party dependencies grouped by concern, and flag "
        "outdated or risky ones visible in the manifests.",
    ),
    "ops/deployment": (
        "Deployment",
        "Describe how the system is built, packaged and deployed, including "
        "environments and configuration.",
    ),
    "ops/cicd": (
        "CI/CD",
        "Describe the CI/CD pipelines: triggers, stages, and what each stage checks.",
    ),
    "ops/kubernetes": (
        "Kubernetes",
        "Describe the Kubernetes resources: workloads, services, ingress and "
        "configuration sources.",
    ),
    "ops/monitoring": (
        "Monitoring",
        "Describe logging, metrics, tracing and alerting visible in the code.",
    ),
    "ops/feature-flags": (
        "Feature Flags",
        "List feature flags, where they are read and what they toggle.",
    ),
    "ops/ml": (
        "Machine Learning",
        "Describe models, training and inference paths, and the data they use.",
    ),
    "data/data-map": (
        "Data Map",
        "Trace how data moves between components, stores and external systems.",
    ),
    "data/events": (
        "Events",
        "List domain events and messages, their producers and consumers.",
    ),
    "analysis/security-audit": (
        "Security Review",
        "Review authentication, input validation, secrets handling and data "
        "exposure. List concrete findings with file references.",
    ),
    "analysis/prompt-security": (
        "Prompt Security",
        "Review LLM prompt construction for injection risks and data leakage.",
    ),
    "analysis/summary": (
        "Architecture Summary",
        "Synthesise the previous analysis results into one index document: "
        "what the system is, how it is built, and links to the detailed sections.",
    ),
    "analysis/audit-report": (
        "Audit Report",
        "Compare the previous analysis results with the existing specs and list "
        "what is outdated, missing or contradicted.",
    ),
}

# Agent ids of the static DAGs that have no planner-assigned prompt:
# agent_id -> (prompt_id, output file)
STATIC_AGENT_PROMPTS: dict[str, tuple[str, str]] = {
    "overview": ("analysis/overview", "00-foundation/overview.md"),
    "module": ("analysis/modules", "02-modules/index.md"),
    "entity": ("analysis/entities", "01-domain/entities.md"),
    "db": ("data/detect-schema", "04-data/database.md"),
    "data_map": ("data/data-map", "04-data/data-map.md"),
    "event": ("data/events", "04-data/events.md"),
    "api": ("api/detect-endpoints", "03-api/rest.md"),
    "dependency": ("integration/dependencies", "06-integration/dependencies.md"),
    "service_dep": ("integration/detect-services", "06-integration/services.md"),
    "auth": ("auth/detect-auth", "05-auth/authentication.md"),
    "authz": ("auth/detect-authz", "05-auth/authorization.md"),
    "security": ("analysis/security-audit", "05-auth/security.md"),
    "prompt_sec": ("analysis/prompt-security", "05-auth/prompt-security.md"),
    "deployment": ("ops/deployment", "07-ops/deployment.md"),
    "monitor": ("ops/monitoring", "07-ops/monitoring.md"),
    "ml": ("ops/ml", "07-ops/ml.md"),
    "flag": ("ops/feature-flags", "07-ops/feature-flags.md"),
    "summary": ("analysis/summary", "index.md"),
    "audit_report": ("analysis/audit-report", "audit-report.md"),
}

# ---------------------------------------------------------------------------
# Output conventions
# ---------------------------------------------------------------------------

# Folders created under the specs folder before anything is written.
SPEC_SECTIONS: tuple[str, ...] = (
    "00-foundation",
    "01-domain",
    "02-modules",
    "03-api",
    "04-data",
    "05-auth",
    "06-integration",
    "07-ops",
    ".meta",
)

MANIFEST_FILE = ".meta/manifest.json"
CONTEXT_SNAPSHOT_FILE = ".meta/context.json"

# SHA-256 hex prefix length for prompt version hashes.
PROMPT_HASH_LENGTH: int = 12
