from __future__ import annotations

import pytest
from market_agent.codegen import CommandCodeGenerator, OpenAICodeGenerator
from market_agent.errors import CodeGenerationError
from market_agent.llm_openai import Completion


def test_command_generator_passes_prompt_through_file() -> None:
    gen = CommandCodeGenerator(command="cat {prompt_file}", models=["m1"])
    assert gen.generate("=== FILE: a.txt ===\n'quoted' $(not run)\n") == (
        "=== FILE: a.txt ===\n'quoted' $(not run)\n"
    )


def test_command_generator_falls_through_models_in_order() -> None:
    gen = CommandCodeGenerator(
        command='test {model} = good && echo "model={model}" || exit 7; cat {prompt_file} >/dev/null',
        models=["bad", "good"],
    )
    assert gen.generate("p").strip() == "model=good"


def test_command_generator_raises_when_every_model_fails() -> None:
    gen = CommandCodeGenerator(command="exit 1; cat {prompt_file}", models=["a", "b"])
    with pytest.raises(CodeGenerationError, match="a: rc=1.*b: rc=1"):
        gen.generate("p")


def test_empty_output_counts_as_failure() -> None:
    gen = CommandCodeGenerator(command="true {prompt_file}", models=["quiet"])
    with pytest.raises(CodeGenerationError):
        gen.generate("p")


def test_command_must_reference_prompt_file() -> None:
    with pytest.raises(ValueError, match="prompt_file"):
        CommandCodeGenerator(command="kilo run -m {model}", models=["m"])


class _FakeTextClient:
    def __init__(self, outcome) -> None:
        self._outcome = outcome
        self.calls: list[dict] = []
        self.total_output_tokens = 0

    def complete(self, **kwargs) -> Completion:
        self.calls.append(kwargs)
        if isinstance(self._outcome, Exception):
            raise self._outcome
        self.total_output_tokens += 20
        return Completion(text=self._outcome, model=kwargs["model"], input_tokens=10, output_tokens=20)


def test_openai_generator_returns_text_and_wraps_errors() -> None:
    client = _FakeTextClient("=== FILE: a.py ===\nx = 1\n")
    gen = OpenAICodeGenerator(client=client, model="gpt-4o")  # type: ignore[arg-type]
    assert gen.generate("build it").startswith("=== FILE: a.py")
    assert client.calls[0]["model"] == "gpt-4o"
    assert client.calls[0]["prompt"] == "build it"

    failing = OpenAICodeGenerator(client=_FakeTextClient(RuntimeError("quota")), model="m")  # type: ignore[arg-type]
    with pytest.raises(CodeGenerationError, match="quota"):
        failing.generate("p")

    empty = OpenAICodeGenerator(client=_FakeTextClient("   "), model="m")  # type: ignore[arg-type]
    with pytest.raises(CodeGenerationError, match="empty"):
        empty.generate("p")
