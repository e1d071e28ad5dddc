"""
Prompt Formatter - Model-specific prompt formatting

Responsibilities:
- Detect model family from model name
- Wrap plain prompts in the family's instruction tags
- Prefer the tokenizer chat template when one exists

Design principles:
- Tokenizer template priority (most robust)
- Manual fallback for known families
- Generic passthrough for unknown models
- Stateless formatting (no side effects)
"""

import logging

logger = logging.getLogger(__name__)

# Checked in order, most specific first
FAMILY_MARKERS = (
    ("llama-3", ("llama-3", "llama3")),
    ("llama-2", ("llama-2", "llama2")),
    ("llama", ("llama",)),
    ("mixtral", ("mixtral",)),
    ("mistral", ("mistral",)),
    ("qwen", ("qwen",)),
    ("zephyr", ("zephyr",)),
    ("phi", ("phi",)),
)

INST_FORMAT = "[INST] {prompt} [/INST]"

MANUAL_FORMATS = {
    "mistral": INST_FORMAT,
    "mixtral": INST_FORMAT,
    "llama": INST_FORMAT,
    "llama-2": INST_FORMAT,
    "llama-3": (
        "<|begin_of_text|><|start_header_id|>user<|end_header_id|>\n\n{prompt}"
        "<|eot_id|><|start_header_id|>assistant<|end_header_id|>\n\n"
    ),
    "qwen": "<|im_start|>user\n{prompt}<|im_end|>\n<|im_start|>assistant\n",
    "zephyr": "<|user|>\n{prompt}\n<|assistant|>\n",
    "phi": "<|user|>\n{prompt}<|end|>\n<|assistant|>\n",
}


def detect_model_family(model_name: str) -> str:
    """Map a HuggingFace model id onto a known family, or 'generic'"""
    name_lower = model_name.lower()
    for family, markers in FAMILY_MARKERS:
        if any(marker in name_lower for marker in markers):
            return family
    return "generic"


class PromptFormatter:
    """Format prompts for specific model families"""

    def __init__(self, model_name: str, tokenizer=None):
        """
        Args:
            model_name: HuggingFace model identifier
            tokenizer: Optional tokenizer with chat_template attribute
        """
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model_family = detect_model_family(model_name)
        self.has_chat_template = getattr(tokenizer, 'chat_template', None) is not None

        if self.has_chat_template:
            logger.info(f"Using tokenizer chat template for {model_name}")
        elif self.model_family in MANUAL_FORMATS:
            logger.info(f"Using manual formatting for {self.model_family} family")
        else:
            logger.warning(f"No chat template or known format for {model_name}, passing prompts through")

    def format_instruction(self, prompt: str) -> str:
        """
        Format a prompt as a single user turn.

        Priority:
        1. Tokenizer chat template
        2. Manual formatting for a known family
        3. Passthrough

        Examples:
            >>> PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2").format_instruction("Hi")
            '[INST] Hi [/INST]'
        """
        if self.has_chat_template:
            try:
                return self.tokenizer.apply_chat_template(
                    [{"role": "user", "content": prompt}],
                    tokenize=False,
                    add_generation_prompt=True
                )
            except Exception as e:
                logger.warning(f"Tokenizer chat template failed: {e}. Falling back to manual formatting")

        template = MANUAL_FORMATS.get(self.model_family)
        if template is not None:
            return template.format(prompt=prompt)

        return prompt

    def get_info(self) -> dict:
        if self.has_chat_template:
            method = "tokenizer_template"
        elif self.model_family in MANUAL_FORMATS:
            method = "manual"
        else:
            method = "none"
        return {
            "model_name": self.model_name,
            "model_family": self.model_family,
            "has_chat_template": self.has_chat_template,
            "formatting_method": method,
        }
