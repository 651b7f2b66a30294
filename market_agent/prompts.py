from __future__ import annotations

from collections.abc import Mapping

from market_agent.files import serialize_files
from market_agent.schemas import TrackedJob

MAX_ERROR_CHARS = 2000

_BASE = """You are an expert software engineer completing a paid job from an agent marketplace.
Job title: {title}
Job description:
{description}

Rules:
1. No placeholders. Never write "... existing code ...", TODO stubs or "implement logic here".
2. Every file you start must be complete and working.
3. Include every dependency manifest the code needs (package.json, requirements.txt, Cargo.toml).
4. Output only files. Start each file with a line of the form: === FILE: path/to/file.ext ===
5. Include a README.md with setup and run instructions."""

_CATEGORY_FILES: dict[str, str] = {
    "smart-contract": """Generate a complete npm/TypeScript package:
=== FILE: src/index.ts === full implementation with types and exports
=== FILE: src/__tests__/index.test.ts === Jest tests for every export
=== FILE: package.json === name, version, build and test scripts, devDependencies
=== FILE: tsconfig.json === TypeScript configuration
=== FILE: README.md === usage, API reference, installation""",
    "bot": """Generate a complete MCP server or bot:
=== FILE: src/index.ts === server with tool definitions and handlers
=== FILE: package.json === dependencies and scripts
=== FILE: README.md === setup, configuration and usage""",
    "security": """Generate a security audit report:
=== FILE: security-report.md === executive summary, methodology, findings by severity, recommendations
=== FILE: checklist.md === security checklist with pass/fail status
=== FILE: README.md === how to read the report""",
    "documentation": """Generate technical documentation:
=== FILE: docs/guide.md === complete guide with code examples
=== FILE: docs/api-reference.md === every method documented
=== FILE: README.md === overview, table of contents, quick start""",
    "data": """Generate a data analysis implementation:
=== FILE: src/analysis.py === processing and analysis script
=== FILE: tests/test_analysis.py === pytest tests for the processing functions
=== FILE: requirements.txt === Python dependencies
=== FILE: README.md === how to run and interpret results""",
}

_GENERAL_FILES = """Generate a complete, working implementation:
- source files with the full implementation
- === FILE: README.md === setup and usage instructions
- any configuration or dependency files needed"""

_FEEDBACK = """
The requester reviewed a previous delivery and asked for changes:
---
{feedback}
---
Address every point of this feedback in the new delivery."""

_FIX = """You previously generated code for the job "{title}".

The {stage} step FAILED with this output:
```
{error}
```

Current files:
{files}

Fix the root cause of every error above. Reply only with the corrected files, each in full,
using the same format: