from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

from market_agent.errors import CodeGenerationError
from market_agent.llm_openai import OpenAITextClient
from market_agent.sandbox import clip, write_text_atomic

logger = logging.getLogger(__name__)


class CodeGenerator(Protocol):
    def generate(self, prompt: str) -> str: ...


class CommandCodeGenerator:
    """Shells out to a code-generation CLI, trying each configured model in order.

    `command` is a template with `{model}` and `{prompt_file}` placeholders; the prompt is
    handed over through a file so arbitrarily long prompts survive shell quoting.
    """

    def __init__(
        self,
        *,
        command: str,
        models: list[str],
        timeout_sec: int = 600,
        cwd: Path | None = None,
    ) -> None:
        if "{prompt_file}" not in command:
            raise ValueError("codegen command must reference {prompt_file}")
        self._command = command
        self._models = list(models) or [""]
        self._timeout_sec = timeout_sec
        self._cwd = cwd

    def generate(self, prompt: str) -> str:
        failures: list[str] = []
        with tempfile.TemporaryDirectory(prefix="market-agent-prompt-") as tmp:
            prompt_file = Path(tmp) / "prompt.txt"
            write_text_atomic(prompt_file, prompt)
            for model in self._models:
                cmd = self._command.format(
                    model=shlex.quote(model), prompt_file=shlex.quote(str(prompt_file))
                )
                logger.info("generating with model %s", model or "(default)")
                try:
                    proc = subprocess.run(
                        cmd,
                        cwd=self._cwd,
                        shell=True,
                        text=True,
                        capture_output=True,
                        timeout=self._timeout_sec,
                        check=False,
                    )
                except subprocess.TimeoutExpired:
                    failures.append(f"{model}: timed out after {self._timeout_sec}s")
                    logger.warning("model %s timed out; trying next", model)
                    continue
                if proc.returncode != 0 or not proc.stdout.strip():
                    failures.append(f"{model}: rc={proc.returncode} {clip(proc.stderr, max_chars=200)}")
                    logger.warning("model %s failed (rc=%s); trying next", model, proc.returncode)
                    continue
                logger.info("model %s produced %d chars", model, len(proc.stdout))
                return proc.stdout
        raise CodeGenerationError("all code-generation models failed: " + "; ".join(failures))


class OpenAICodeGenerator:
    """Code generation through the OpenAI Responses API."""

    SYSTEM_PROMPT = (
        "You are an expert software engineer. Reply only with complete files, each introduced "
        "by a line of the form `=== FILE: path/to/file.ext ===`."
    )

    def __init__(self, *, client: OpenAITextClient, model: str, max_output_tokens: int = 16000) -> None:
        self._client = client
        self._model = model
        self._max_output_tokens = max_output_tokens

    def generate(self, prompt: str) -> str:
        try:
            completion = self._client.complete(
                model=self._model,
                instructions=self.SYSTEM_PROMPT,
                prompt=prompt,
                max_output_tokens=self._max_output_tokens,
            )
        except Exception as e:
            raise CodeGenerationError(f"OpenAI generation failed: {e}") from e
        logger.info(
            "openai %s: %d input / %d output tokens (%d total output so far)",
            self._model,
            completion.input_tokens,
            completion.output_tokens,
            self._client.total_output_tokens,
        )
        if not completion.text.strip():
            raise CodeGenerationError("OpenAI returned an empty response")
        return completion.text
