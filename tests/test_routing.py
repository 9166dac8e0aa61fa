"""Tests for querybox/routing.py — route heuristics, discovery filtering, provider inference."""

from __future__ import annotations

import pytest

from querybox.routing import (
    FALLBACK_LOCAL_MODEL,
    LONG_PROMPT_CHARS,
    Provider,
    Route,
    choose_auto_model,
    filter_discovered,
    infer_provider,
    looks_like_code,
    resolve_route,
    route_for,
)

TABLE = {"code": "qwen2.5-coder", "long": "claude-sonnet-4-5", "default": "gpt-4o-mini"}


class TestRouteFor:
    @pytest.mark.parametrize("prompt", [
        "```python\nprint(1)\n```",
        "why does const x = 1 fail",
        "def add(a, b): return a + b",
        "#include <stdio.h>",
        "items.map(x => x * 2)",
    ])
    def test_code_prompts(self, prompt):
        assert looks_like_code(prompt)
        assert route_for(prompt) is Route.CODE

    def test_long_prompt(self):
        assert route_for("word " * (LONG_PROMPT_CHARS // 5 + 1)) is Route.LONG

    def test_exactly_threshold_is_not_long(self):
        assert route_for("a" * LONG_PROMPT_CHARS) is Route.DEFAULT

    def test_plain_question_is_default(self):
        assert route_for("what is the capital of France") is Route.DEFAULT

    def test_code_wins_over_length(self):
        assert route_for("import os\n" + "a" * (LONG_PROMPT_CHARS + 1)) is Route.CODE


class TestResolveRoute:
    def test_uses_route_entry(self):
        assert resolve_route("def f(): pass", TABLE) == "qwen2.5-coder"

    def test_missing_route_falls_back_to_default(self):
        assert resolve_route("def f(): pass", {"default": "gpt-4o-mini"}) == "gpt-4o-mini"

    def test_empty_table_is_none(self):
        assert resolve_route("hello", {"code": "", "long": "", "default": "  "}) is None


class TestChooseAutoModel:
    LONG = "word " * (LONG_PROMPT_CHARS // 5 + 1)
    ALL = {Provider.OPENAI, Provider.OPENROUTER, Provider.LMSTUDIO}

    def test_preferred_local_coder_for_code(self):
        local = ["llava-1.5", "qwen2.5-coder-7b"]
        assert choose_auto_model("def f(): pass", self.ALL, True, local) == "qwen2.5-coder-7b"

    def test_preferred_local_first_model_otherwise(self):
        assert choose_auto_model("hello", self.ALL, True, ["llava-1.5", "qwen2.5"]) == "llava-1.5"

    def test_preferred_local_without_models_uses_remote(self):
        assert choose_auto_model("hello", self.ALL, True, []) == "gpt-4o-mini"

    def test_openrouter_coder(self):
        assert choose_auto_model("const x = 1", self.ALL) == "deepseek/deepseek-coder"

    def test_code_without_openrouter_is_default(self):
        assert choose_auto_model("const x = 1", {Provider.OPENAI}) == "gpt-4o-mini"

    def test_long_prefers_openrouter(self):
        assert choose_auto_model(self.LONG, self.ALL) == "openai/gpt-4o"

    def test_long_on_openai(self):
        assert choose_auto_model(self.LONG, {Provider.OPENAI}) == "gpt-4o"

    def test_openrouter_default(self):
        assert choose_auto_model("hello", {Provider.OPENROUTER}) == "openai/gpt-4o-mini"

    def test_local_only(self):
        assert choose_auto_model("hello", {Provider.LMSTUDIO}, local_models=["mistral-7b"]) == "mistral-7b"
        assert choose_auto_model("hello", {Provider.LMSTUDIO}) == FALLBACK_LOCAL_MODEL

    def test_no_openai_style_provider(self):
        assert choose_auto_model("hello", {Provider.ANTHROPIC}) is None


class TestFilterDiscovered:
    def test_drops_non_chat_models(self):
        models = ["text-embedding-3-small", "nomic-embed-text", "my-pipe", "chatbot-arena", "mistral-7b"]
        assert filter_discovered(models) == ["mistral-7b"]

    def test_orders_by_family(self):
        assert filter_discovered(["gpt-4o", "unknown-model", "qwen2.5-7b", "llama-3.1-8b"]) == [
            "llama-3.1-8b", "qwen2.5-7b", "gpt-4o", "unknown-model",
        ]

    def test_empty(self):
        assert filter_discovered([]) == []


class TestInferProvider:
    @pytest.mark.parametrize("model, provider", [
        ("claude-sonnet-4-5", Provider.ANTHROPIC),
        ("meta-llama/llama-3.1-70b-instruct", Provider.OPENROUTER),
        ("gpt-4o-mini", Provider.OPENAI),
        ("o3-mini", Provider.OPENAI),
        ("qwen2.5-7b-instruct", Provider.LMSTUDIO),
    ])
    def test_inference(self, model, provider):
        assert infer_provider(model) is provider

    def test_blank_is_none(self):
        assert infer_provider("  ") is None
