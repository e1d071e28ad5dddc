"""
HuggingFace Client - Language model behind the extraction and question calls

Responsibilities:
- Load tokenizer and causal LM (NF4 4-bit on CUDA when requested)
- Serve the two calls the engine makes: generate() for fallback questions,
  generate_json() for answer extraction
- Enforce a per-call time budget
- Repair JSON-ish model output (json_repair) before the caller parses it

Design principles:
- Constructed once by the harness and injected into the adapters
- CUDA OOM propagates; the adapters decide how to degrade
- Time budget enforced twice: transformers max_time stops generation,
  the elapsed check turns an overrun into TimeoutError
- Formatting lives in PromptFormatter, parsing lives in the adapters
"""

import logging
import time
from typing import Any, Dict, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, BitsAndBytesConfig

from slot_engine.utils.json_repair import repair_json
from slot_engine.utils.prompt_formatter import PromptFormatter

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"

DEFAULT_TIMEOUT_SECONDS = 30.0
PAD_TOKEN = "[PAD]"


class HuggingFaceClient:
    """Local HuggingFace model serving the engine's model calls"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
        auto_format: bool = True,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    ) -> None:
        """
        Args:
            model_name: HuggingFace model id
            load_in_4bit: Quantize to NF4 (CUDA only, needs bitsandbytes)
            device: "cuda" or "cpu"
            auto_format: Wrap prompts in the model family's instruction format
            timeout_seconds: Budget for calls that don't pass their own timeout

        Raises:
            RuntimeError: If CUDA requested but not available
            torch.cuda.OutOfMemoryError: If the model does not fit
        """
        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        self.model_name = model_name
        self.device = device
        self.timeout_seconds = timeout_seconds
        self.call_count = 0

        logger.info(f"Loading {model_name} on {device} (4bit={load_in_4bit and device == DEVICE_CUDA})")

        self.tokenizer = self._load_tokenizer()
        self.formatter: Optional[PromptFormatter] = (
            PromptFormatter(model_name, self.tokenizer) if auto_format else None
        )
        self.model = self._load_model(load_in_4bit)
        self.model.eval()

        logger.info(f"Model client ready: {self.get_model_info()}")

    # ========================
    # Loading
    # ========================

    def _load_tokenizer(self):
        try:
            tokenizer = AutoTokenizer.from_pretrained(self.model_name)
        except Exception as e:
            logger.error(f"Tokenizer load failed for {self.model_name}: {e}")
            raise

        # generate() needs a pad token id
        if tokenizer.pad_token is None:
            if tokenizer.eos_token is not None:
                tokenizer.pad_token = tokenizer.eos_token
            else:
                tokenizer.add_special_tokens({'pad_token': PAD_TOKEN})
                logger.warning(f"{self.model_name} has no eos token, added {PAD_TOKEN}")
        return tokenizer

    def _quantization_config(self, load_in_4bit: bool) -> Optional[BitsAndBytesConfig]:
        if not load_in_4bit or self.device != DEVICE_CUDA:
            return None
        return BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_quant_type="nf4",
            bnb_4bit_compute_dtype=torch.bfloat16,
            bnb_4bit_use_double_quant=True
        )

    def _load_model(self, load_in_4bit: bool):
        on_cuda = self.device == DEVICE_CUDA
        try:
            model = AutoModelForCausalLM.from_pretrained(
                self.model_name,
                quantization_config=self._quantization_config(load_in_4bit),
                device_map="auto" if on_cuda else None,
                torch_dtype=torch.bfloat16 if on_cuda else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA out of memory loading {self.model_name}")
            raise
        except Exception as e:
            logger.error(f"Model load failed for {self.model_name}: {e}")
            raise

        if on_cuda:
            gb_allocated = torch.cuda.memory_allocated() / 1e9
            logger.debug(f"GPU memory after load: {gb_allocated:.2f}GB")
        return model

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    # ========================
    # Calls
    # ========================

    def generate(
        self,
        prompt: str,
        max_tokens: int = 256,
        temperature: float = 0.3,
        timeout: Optional[float] = None,
        apply_formatting: bool = True
    ) -> str:
        """
        Complete a plain-text prompt.

        Args:
            prompt: Prompt text, unformatted
            max_tokens: New-token limit
            temperature: 0.0 means greedy decoding
            timeout: Seconds for this call (client default when None)
            apply_formatting: Wrap in the family instruction format

        Raises:
            RuntimeError: If model not loaded
            TimeoutError: If the call ran over its budget
            torch.cuda.OutOfMemoryError: If GPU runs out of memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        budget = self.timeout_seconds if timeout is None else timeout
        if apply_formatting and self.formatter is not None:
            prompt = self.formatter.format_instruction(prompt)

        inputs = self.tokenizer(prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_length = inputs.input_ids.shape[1]

        sampling = {"do_sample": False}
        if temperature > 0:
            sampling = {"do_sample": True, "temperature": temperature}

        started = time.monotonic()
        try:
            with torch.no_grad():
                output_ids = self.model.generate(
                    inputs.input_ids,
                    attention_mask=inputs.attention_mask,
                    max_new_tokens=max_tokens,
                    max_time=budget,
                    pad_token_id=self.tokenizer.pad_token_id,
                    **sampling
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA out of memory generating from a {prompt_length}-token prompt")
            raise

        elapsed = time.monotonic() - started
        self.call_count += 1
        if elapsed > budget:
            raise TimeoutError(f"Generation took {elapsed:.1f}s (budget {budget:.1f}s)")

        text = self.tokenizer.decode(output_ids[0][prompt_length:], skip_special_tokens=True)
        logger.debug(f"Generated {len(text)} chars in {elapsed:.2f}s (prompt {prompt_length} tokens)")
        return text

    def generate_json(
        self,
        prompt: str,
        max_tokens: int = 256,
        temperature: float = 0.0,
        timeout: Optional[float] = None,
        apply_formatting: bool = True
    ) -> str:
        """
        Complete a prompt that asks for a JSON object.

        Returns the repaired text, still a string. The caller parses it.
        """
        raw = self.generate(
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
            apply_formatting=apply_formatting
        )
        return repair_json(raw)

    def get_model_info(self) -> Dict[str, Any]:
        info = {
            "model_name": self.model_name,
            "device": self.device,
            "timeout_seconds": self.timeout_seconds,
            "call_count": self.call_count,
        }
        if self.formatter is not None:
            info["formatter"] = self.formatter.get_info()
        return info
