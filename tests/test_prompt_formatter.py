"""
Test PromptFormatter - family detection and instruction wrapping
"""

import pytest

from slot_engine.utils.prompt_formatter import PromptFormatter, detect_model_family


class TemplateTokenizer:
    chat_template = "{{ messages }}"

    def apply_chat_template(self, messages, tokenize, add_generation_prompt):
        return f"<chat>{messages[0]['content']}</chat>"


class BrokenTemplateTokenizer:
    chat_template = "{{ broken"

    def apply_chat_template(self, messages, tokenize, add_generation_prompt):
        raise ValueError("template error")


@pytest.mark.parametrize("model_name, family", [
    ("mistralai/Mistral-7B-Instruct-v0.2", "mistral"),
    ("mistralai/Mixtral-8x7B-Instruct-v0.1", "mixtral"),
    ("meta-llama/Meta-Llama-3-8B-Instruct", "llama-3"),
    ("meta-llama/Llama-2-7b-chat-hf", "llama-2"),
    ("Qwen/Qwen2-7B-Instruct", "qwen"),
    ("gpt2", "generic"),
])
def test_detect_model_family(model_name, family):
    assert detect_model_family(model_name) == family


def test_manual_mistral_format():
    formatter = PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2")
    assert formatter.format_instruction("Hi") == "[INST] Hi [/INST]"
    assert formatter.get_info()["formatting_method"] == "manual"


def test_tokenizer_template_preferred():
    formatter = PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2", TemplateTokenizer())
    assert formatter.format_instruction("Hi") == "<chat>Hi</chat>"
    assert formatter.get_info()["formatting_method"] == "tokenizer_template"


def test_failing_template_falls_back_to_manual():
    formatter = PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2", BrokenTemplateTokenizer())
    assert formatter.format_instruction("Hi") == "[INST] Hi [/INST]"


def test_unknown_model_passes_through():
    formatter = PromptFormatter("gpt2")
    assert formatter.format_instruction("Hi") == "Hi"
    info = formatter.get_info()
    assert info["model_family"] == "generic"
    assert info["formatting_method"] == "none"
    assert not info["has_chat_template"]
