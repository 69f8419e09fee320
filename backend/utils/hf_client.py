"""
HuggingFace Client - text-generation wrapper for expertise detection
and diagnostic narratives

Responsibilities:
- Load a causal LM (4-bit NF4 on CUDA, full precision on CPU)
- Generate completions, applying the model's chat template when it has one
- Generate JSON completions, trimming fences and trailing text

Design principles:
- Dependency injection (constructed once in app.py, passed to consumers)
- Consumers depend on generate()/generate_json() only, so tests pass a Mock
- Deadlines are enforced by the caller (helpers.call_with_timeout)
"""

import logging
import time

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, BitsAndBytesConfig

from backend.utils.helpers import extract_json_object

logger = logging.getLogger(__name__)


class HuggingFaceClient:
    """Loads one model and serves prompt -> text completions"""

    def __init__(self, model_name, load_in_4bit=True, device=None):
        """
        Load model and tokenizer

        Args:
            model_name (str): HuggingFace model identifier
            load_in_4bit (bool): Quantize to 4-bit when running on CUDA
            device (str): "cuda", "cpu", or None to pick automatically

        Raises:
            RuntimeError: If CUDA requested but not available
        """
        if device is None:
            device = "cuda" if torch.cuda.is_available() else "cpu"
        if device == "cuda" and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available")

        self.model_name = model_name
        self.device = device
        use_cuda = device == "cuda"

        quantization_config = None
        if load_in_4bit and use_cuda:
            quantization_config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True
            )

        logger.info(f"Loading model {model_name} on {device} (4-bit: {quantization_config is not None})")

        self.tokenizer = AutoTokenizer.from_pretrained(model_name)
        try:
            self.model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map="auto" if use_cuda else None,
                torch_dtype=torch.bfloat16 if use_cuda else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error("CUDA out of memory while loading model")
            raise

        self.model.eval()
        logger.info("Text-generation model ready")

    def _build_input(self, prompt, system_prompt):
        if getattr(self.tokenizer, "chat_template", None):
            messages = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.append({"role": "user", "content": prompt})
            return self.tokenizer.apply_chat_template(
                messages, tokenize=False, add_generation_prompt=True
            )
        if system_prompt:
            return f"{system_prompt}\n\n{prompt}"
        return prompt

    def generate(self, prompt, max_tokens=256, temperature=0.3, system_prompt=None):
        """
        Generate a completion

        Args:
            prompt (str): User prompt
            max_tokens (int): Maximum new tokens
            temperature (float): Sampling temperature (0.0 = greedy)
            system_prompt (str): Optional instructions placed before the prompt

        Returns:
            str: Generated text without the prompt
        """
        start = time.time()
        text = self._build_input(prompt, system_prompt)
        inputs = self.tokenizer(text, return_tensors="pt").to(self.model.device)
        prompt_tokens = inputs.input_ids.shape[1]

        with torch.no_grad():
            outputs = self.model.generate(
                **inputs,
                max_new_tokens=max_tokens,
                temperature=temperature if temperature > 0 else None,
                do_sample=temperature > 0,
                pad_token_id=self.tokenizer.eos_token_id
            )

        generated = outputs[0][prompt_tokens:]
        logger.debug(
            f"Generated {len(generated)} tokens from {prompt_tokens} "
            f"in {(time.time() - start) * 1000:.0f}ms"
        )
        return self.tokenizer.decode(generated, skip_special_tokens=True)

    def generate_json(self, prompt, max_tokens=256, system_prompt=None):
        """
        Generate a JSON object completion (greedy decoding)

        Returns:
            str: The first balanced {...} object found in the output,
                 or the stripped output if there is none. Caller parses it.
        """
        raw = self.generate(prompt, max_tokens=max_tokens, temperature=0.0,
                            system_prompt=system_prompt)
        return extract_json_object(raw)
