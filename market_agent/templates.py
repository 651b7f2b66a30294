from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import PurePosixPath

from market_agent.files import canonical_content
from market_agent.schemas import TrackedJob

_REQUIREMENT_RE = re.compile(r"^\s*[-*]\s+(.+)$", re.M)
_DEFAULT_FUNCTIONS = ["process", "validate", "format", "parse"]
_PREVIEW_CHARS = 2000


def slugify(text: str, *, sep: str = "-") -> str:
    return re.sub(r"[^a-z0-9]+", sep, text.lower()).strip(sep)


def requirements_from(description: str) -> list[str]:
    return [m.group(1).strip() for m in _REQUIREMENT_RE.finditer(description or "")]


def _ident(text: str, index: int) -> str:
    name = slugify(text, sep="_") or f"fn_{index}"
    return f"fn_{name}" if name[0].isdigit() else name


def _typescript_package(title: str, desc: str, reqs: list[str]) -> dict[str, str]:
    functions = reqs or _DEFAULT_FUNCTIONS
    names = [_ident(fn, i) for i, fn in enumerate(functions)]
    fn_code = "\n\n".join(
        f"/**\n * {fn}\n */\nexport function {name}(input: string): string {{\n"
        "    if (!input || typeof input !== 'string') {\n"
        "        throw new Error('Invalid input: expected non-empty string');\n"
        "    }\n"
        "    return input.trim();\n"
        "}"
        for fn, name in zip(functions, names)
    )
    test_code = "\n\n".join(
        f"describe('{name}', () => {{\n"
        f"    it('handles valid input', () => {{\n        expect({name}('test')).toBeDefined();\n    }});\n\n"
        f"    it('throws on invalid input', () => {{\n        expect(() => {name}('')).toThrow();\n    }});\n"
        "});"
        for name in names
    )
    safe_name = slugify(title) or "implementation"
    package = {
        "name": safe_name,
        "version": "1.0.0",
        "description": desc[:200],
        "main": "dist/index.js",
        "types": "dist/index.d.ts",
        "scripts": {"build": "tsc", "test": "jest"},
        "license": "MIT",
        "jest": {"preset": "ts-jest", "testEnvironment": "node"},
        "devDependencies": {
            "typescript": "^5.0.0",
            "jest": "^29.0.0",
            "ts-jest": "^29.0.0",
            "@types/jest": "^29.0.0",
        },
    }
    tsconfig = {
        "compilerOptions": {
            "target": "ES2020",
            "module": "commonjs",
            "lib": ["ES2020"],
            "declaration": True,
            "outDir": "./dist",
            "rootDir": "./src",
            "strict": True,
            "esModuleInterop": True,
            "skipLibCheck": True,
        },
        "include": ["src/**/*"],
        "exclude": ["node_modules", "dist", "**/*.test.ts"],
    }
    api = "\n".join(f"### `{name}(input: string): string`\n\n{fn}\n" for fn, name in zip(functions, names))
    readme = (
        f"# {title}\n\n{desc[:300]}\n\n"
        f"## Usage\n\n```typescript\nimport {{ {names[0]} }} from '{safe_name}';\n\n"
        f"console.log({names[0]}('example'));\n```\n\n"
        f"## API\n\n{api}\n"
        "## Development\n\n```bash\nnpm install\nnpm run build\nnpm test\n```\n\n## License\n\nMIT\n"
    )
    return {
        "src/index.ts": f"/**\n * {title}\n * {desc[:100]}\n */\n\n{fn_code}\n",
        "src/__tests__/index.test.ts": f"import {{ {', '.join(names)} }} from '../index';\n\n{test_code}\n",
        "package.json": json.dumps(package, indent=2) + "\n",
        "tsconfig.json": json.dumps(tsconfig, indent=2) + "\n",
        "README.md": readme,
    }


def _documentation(title: str, desc: str, reqs: list[str]) -> dict[str, str]:
    sections = "\n".join(
        f"### {i}. {r}\n\nDetailed explanation and examples for: {r}\n" for i, r in enumerate(reqs, 1)
    )
    return {
        "docs/guide.md": f"# {title}: Complete Guide\n\n## Overview\n\n{desc}\n\n## Detailed Guide\n\n{sections}\n",
        "README.md": (
            f"# {title}\n\n{desc[:300]}\n\n## Contents\n\n- [Complete Guide](docs/guide.md)\n"
        ),
    }


def _security_report(title: str, desc: str, reqs: list[str]) -> dict[str, str]:
    findings = "\n".join(
        f"### Finding {i}: {r}\n\n**Severity**: Medium\n**Status**: Open\n"
        f"**Recommendation**: Review and address: {r}\n"
        for i, r in enumerate(reqs, 1)
    )
    return {
        "security-report.md": (
            f"# Security Audit Report: {title}\n\n## Executive Summary\n\n{desc[:300]}\n\n"
            "## Methodology\n\n- Static code analysis\n- Dependency vulnerability scanning\n"
            "- Access-control and permission review\n\n"
            f"## Findings\n\n{findings or 'No requirement-specific findings.'}\n\n"
            "## Recommendations\n\n1. Address every finding above\n2. Add test coverage for critical paths\n"
        ),
        "README.md": f"# {title}\n\nSecurity audit report. See [security-report.md](security-report.md).\n",
    }


def _default(title: str, desc: str) -> dict[str, str]:
    return {
        "src/index.ts": (
            f"/**\n * {title}\n */\n\nexport function main(): void {{\n"
            f"    console.log({json.dumps(title + ' - implementation')});\n}}\n\nmain();\n"
        ),
        "README.md": f"# {title}\n\n{desc[:300]}\n\n## Setup\n\n```bash\nnpm install\nnpm start\n```\n",
    }


def generate_fallback_files(job: TrackedJob, category: str) -> dict[str, str]:
    """Deterministic starter files used when no code generator output is available; never empty."""
    title = job.title or "implementation"
    desc = job.description or ""
    reqs = requirements_from(desc)

    if category in ("smart-contract", "general"):
        files = _typescript_package(title, desc, reqs)
    elif category == "documentation":
        files = _documentation(title, desc, reqs)
    elif category == "security":
        files = _security_report(title, desc, reqs)
    else:
        files = _default(title, desc)
    return {path: canonical_content(content) for path, content in files.items()}


def build_deliverable_md(job: TrackedJob, files: Mapping[str, str]) -> str:
    listing = "\n".join(
        f"- `{path}` ({len(content.splitlines())} lines)" for path, content in files.items()
    )
    main_path = next((p for p in files if "index" in p or "main" in p), None)
    readme_path = next((p for p in files if "readme" in p.lower()), None)

    md = f"# {job.title}\n\n## Implementation Summary\n\n"
    md += "Complete implementation of the job requirements.\n\n"
    md += f"## Files Delivered\n\n{listing}\n\n"
    if readme_path is not None:
        md += f"## Documentation\n\n{files[readme_path].strip()}\n\n"
    if main_path is not None:
        ext = PurePosixPath(main_path).suffix.lstrip(".")
        preview = files[main_path][:_PREVIEW_CHARS].rstrip("\n")
        md += f"## Source Code Preview\n\n```{ext}\n{preview}\n```\n"
    return md
