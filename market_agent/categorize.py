from __future__ import annotations

import re
from typing import Protocol

from market_agent.config import BidStrategy
from market_agent.pricing import DEFAULT_MULTIPLIER, compute_bid_amount
from market_agent.schemas import Job

GENERAL = "general"

CATEGORY_MULTIPLIERS: dict[str, float] = {
    "security": 0.55,
    "smart-contract": 0.50,
    "analytics": 0.45,
    "backend": 0.45,
    "data": 0.40,
    "bot": 0.40,
    "frontend": 0.40,
    "documentation": 0.35,
    "testing": 0.35,
    GENERAL: 0.40,
}

# Ties resolve to the category listed first.
CATEGORY_ORDER: tuple[str, ...] = (
    "analytics",
    "security",
    "smart-contract",
    "data",
    "bot",
    "backend",
    "frontend",
    "documentation",
    "testing",
)

_WORD_COUNT_RE = re.compile(r"\d+\+?\s*words")


class Categorizer(Protocol):
    def categorize(self, job: Job) -> str: ...

    def quality(self, job: Job) -> int: ...

    def multiplier(self, category: str) -> float: ...

    def price(self, job: Job, category: str, strategy: BidStrategy | str) -> float: ...

    def draft_proposal(self, job: Job, category: str) -> str: ...


def _job_text(job: Job) -> str:
    return f"{job.description or ''} {job.title or ''}".lower()


def _has(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def score_categories(text: str) -> dict[str, int]:
    s = dict.fromkeys(CATEGORY_ORDER, 0)

    if "dune" in text:
        s["analytics"] += 3
    if "dashboard" in text:
        s["analytics"] += 2
    if "analytics" in text:
        s["analytics"] += 2
    if _has(text, "chart", "visualization"):
        s["analytics"] += 1

    if "security audit" in text:
        s["security"] += 3
    if "audit" in text:
        s["security"] += 2
    if "vulnerabilit" in text:
        s["security"] += 2
    if _has(text, "penetration", "exploit"):
        s["security"] += 2

    if "smart contract" in text:
        s["smart-contract"] += 3
    if "near-sdk" in text:
        s["smart-contract"] += 3
    if "solidity" in text:
        s["smart-contract"] += 2
    if "deploy" in text and "contract" in text:
        s["smart-contract"] += 2
    # A bare language mention is weak evidence; guides about Rust are documentation.
    if "rust" in text and not _has(text, "guide", "tutorial"):
        s["smart-contract"] += 1

    if "data pipeline" in text:
        s["data"] += 3
    if "etl" in text:
        s["data"] += 3
    if _has(text, "scraping", "scraper"):
        s["data"] += 2
    if "python" in text and "data" in text:
        s["data"] += 2
    if "analysis" in text and "security" not in text:
        s["data"] += 1

    if _has(text, "mcp server", "mcp tool"):
        s["bot"] += 3
    if "autonomous agent" in text:
        s["bot"] += 3
    if _has(text, "claude", "chatgpt", "gpt"):
        s["bot"] += 2
    if "bot" in text:
        s["bot"] += 1
    if "automation" in text:
        s["bot"] += 1

    if _has(text, "rest api", "graphql"):
        s["backend"] += 2
    if "backend" in text:
        s["backend"] += 2
    if "server" in text and "endpoint" in text:
        s["backend"] += 2

    if "frontend" in text:
        s["frontend"] += 2
    if _has(text, "react", "next.js", "nextjs"):
        s["frontend"] += 2
    if "ui" in text and "component" in text:
        s["frontend"] += 2
    if _has(text, "website", "landing page"):
        s["frontend"] += 2

    if "guide" in text:
        s["documentation"] += 2
    if "tutorial" in text:
        s["documentation"] += 2
    if "documentation" in text:
        s["documentation"] += 2
    if "blog" in text:
        s["documentation"] += 2
    if "write" in text and _has(text, "article", "content"):
        s["documentation"] += 2
    if "onboarding" in text:
        s["documentation"] += 1
    if _WORD_COUNT_RE.search(text):
        s["documentation"] += 2

    if _has(text, "test suite", "test coverage"):
        s["testing"] += 3
    if "qa" in text:
        s["testing"] += 2
    if _has(text, "unit test", "integration test"):
        s["testing"] += 2

    return s


_KEYWORD_MAPS: dict[str, dict[str, str]] = {
    "chains": {
        "ethereum": "Ethereum", "arbitrum": "Arbitrum", "optimism": "Optimism",
        "polygon": "Polygon", "solana": "Solana", "near": "NEAR", "bnb": "BNB Chain",
        "avalanche": "Avalanche", "bitcoin": "Bitcoin", "cosmos": "Cosmos",
        "aptos": "Aptos", "aurora": "Aurora",
    },
    "tools": {
        "dune": "Dune Analytics", "flipside": "Flipside", "subgraph": "The Graph (subgraph)",
        "indexer": "NEAR Indexer", "docker": "Docker", "github": "GitHub", "vercel": "Vercel",
        "supabase": "Supabase", "postgres": "PostgreSQL", "redis": "Redis", "mongodb": "MongoDB",
        "graphql": "GraphQL", "rest api": "REST API", "openai": "OpenAI API",
        "langchain": "LangChain",
    },
    "languages": {
        "rust": "Rust", "typescript": "TypeScript", "javascript": "JavaScript",
        "python": "Python", "solidity": "Solidity", "sql": "SQL", "react": "React",
        "next.js": "Next.js", "nextjs": "Next.js", "node": "Node.js",
    },
    "protocols": {
        "erc20": "ERC-20", "erc721": "ERC-721", "nep141": "NEP-141", "nep171": "NEP-171",
        "defi": "DeFi", "nft": "NFT", "dao": "DAO", "dex": "DEX", "bridge": "bridge",
        "lending": "lending protocol", "staking": "staking",
    },
    "metrics": {
        "tvl": "Total Value Locked (TVL)", "volume": "trading volume",
        "transaction": "transaction metrics", "fee": "fee analysis", "apy": "APY/yield rates",
        "liquidity": "liquidity depth", "latency": "latency",
    },
    "deliverables": {
        "dashboard": "interactive dashboard", "report": "detailed report", "cli": "CLI tool",
        "bot": "automated bot", "script": "automation script",
        "documentation": "technical documentation", "chart": "data visualizations",
        "repository": "GitHub repository", "library": "reusable library",
    },
}


def extract_keywords(job: Job) -> dict[str, list[str]]:
    text = _job_text(job)
    out: dict[str, list[str]] = {}
    for group, mapping in _KEYWORD_MAPS.items():
        found: list[str] = []
        for needle, label in mapping.items():
            if needle in text and label not in found:
                found.append(label)
        out[group] = found
    return out


def _methodology(category: str, kw: dict[str, list[str]]) -> list[str]:
    langs = ", ".join(kw["languages"])
    tools = ", ".join(kw["tools"])
    chains = ", ".join(kw["chains"])
    protocols = ", ".join(kw["protocols"])
    metrics = ", ".join(kw["metrics"])

    m: list[str] = []
    if category == "analytics":
        m.append(f"Use {tools} as the primary data platform" if tools
                 else "Build queries on Dune Analytics or an equivalent SQL data platform")
        if chains:
            m.append(f"Query on-chain data across {chains}")
        if metrics:
            m.append(f"Calculate and visualize: {metrics}")
        m.append("Time-series views (24h/7d/30d) with interactive filters")
    elif category == "security":
        m.append("Static analysis and manual review of all logic paths")
        if langs:
            m.append(f"Check {langs} sources for known vulnerability patterns")
        if protocols:
            m.append(f"Review {protocols}-specific attack surfaces")
        m.append("Classify findings by severity (Critical/High/Medium/Low/Informational)")
    elif category == "smart-contract":
        if langs:
            m.append(f"Implement in {langs} with full type safety")
        if protocols:
            m.append(f"Follow {protocols} standards")
        m.append("Unit and integration tests for every public method")
        m.append("Deployment config and gas profiling")
    elif category == "data":
        if langs:
            m.append(f"Build the pipeline in {langs}")
        if tools:
            m.append(f"Use {tools} for storage and processing")
        m.append("Validation, cleaning and transformation stages")
        m.append("Reproducible scripts with parameterized inputs")
    elif category == "bot":
        if langs:
            m.append(f"Implement in {langs} with error handling and retries")
        if tools:
            m.append(f"Integrate with {tools}")
        m.append("Structured logging and graceful shutdown")
        m.append("Credentials from the environment, never hardcoded")
    elif category == "backend":
        if langs:
            m.append(f"Build the REST/GraphQL API in {langs}")
        m.append("Input validation, authentication and proper error responses")
        m.append("API tests and OpenAPI documentation")
    elif category == "frontend":
        if langs:
            m.append(f"Responsive UI with {langs}")
        m.append("Clean component architecture with loading and error states")
        m.append("Accessibility (WCAG 2.1 AA)")
    elif category == "documentation":
        m.append("Structured docs: overview, quickstart, deep dive")
        if langs:
            m.append(f"{langs} examples that compile and run")
        m.append("API reference with parameters, return types and error codes")
    elif category == "testing":
        if langs:
            m.append(f"Tests in {langs} using the standard frameworks")
        m.append("Unit tests for public functions, integration tests for workflows")
        m.append("Edge cases: boundary values and error paths")
    else:
        if langs:
            m.append(f"Implement using {langs}")
        if tools:
            m.append(f"Use {tools} for the core infrastructure")
        m.append("Clean architecture with tests and documentation")
        m.append("Production-ready error handling and logging")
    return m


class KeywordCategorizer:
    """Keyword-scored job categories, a quality heuristic, and proposal prose."""

    def __init__(self, multipliers: dict[str, float] | None = None) -> None:
        self._multipliers = dict(multipliers or CATEGORY_MULTIPLIERS)

    def categorize(self, job: Job) -> str:
        scores = score_categories(_job_text(job))
        best, best_score = GENERAL, 0
        for category in CATEGORY_ORDER:
            if scores[category] > best_score:
                best, best_score = category, scores[category]
        return best

    def quality(self, job: Job) -> int:
        text = f"{job.title or ''}{job.description or ''}".lower()
        score = 50
        if (job.budget_amount or 0.0) >= 3.0:
            score += 20
        if "rust" in text:
            score += 15
        if "python" in text:
            score += 15
        if job.bid_count > 15:
            score -= 20
        return score

    def multiplier(self, category: str) -> float:
        return self._multipliers.get(category, DEFAULT_MULTIPLIER)

    def price(self, job: Job, category: str, strategy: BidStrategy | str) -> float:
        return compute_bid_amount(
            job.budget_amount, multiplier=self.multiplier(category), strategy=strategy
        )

    def draft_proposal(self, job: Job, category: str) -> str:
        kw = extract_keywords(job)
        summary = " ".join((job.description or "")[:600].split())
        methodology = "\n".join(f"- {line}" for line in _methodology(category, kw))
        deliverables = ", ".join(kw["deliverables"])
        what = f"{deliverables}, delivered" if deliverables else "Complete working implementation delivered"
        return (
            f"**PROBLEM:** {summary or job.title or '(untitled)'}\n\n"
            f"**METHODOLOGY:**\n{methodology}\n\n"
            f"**DELIVERABLE:** {what} as a public GitHub Gist with README, "
            "setup instructions and all source files."
        )
