import logging
from functools import lru_cache
from typing import Any, Callable, Optional

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class ReasonerUnavailable(RuntimeError):
    """No AI review backend is configured for this process."""


def is_reasoner_configured(settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    if settings.ai_backend == "openai":
        return bool(settings.openai_api_key)
    if settings.ai_backend == "local":
        return bool(settings.local_review_model)
    return False


@lru_cache(maxsize=2)
def _get_openai_client(api_key: str, timeout: float):
    import openai

    return openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)


@lru_cache(maxsize=2)
def _get_local_causal_lm(model_path: str) -> Callable[..., str]:
    """Load a local causal LM and return a generation callable."""
    from transformers import AutoModelForCausalLM, AutoTokenizer
    import torch

    load_kwargs: dict[str, Any] = {"device_map": "auto"}
    if not torch.cuda.is_available():
        logger.warning("No CUDA GPU detected, loading review model on CPU (inference will be slow)")

    logger.info(f"Loading causal LM: {model_path} with kwargs: {load_kwargs}")
    tokenizer = AutoTokenizer.from_pretrained(model_path)
    model = AutoModelForCausalLM.from_pretrained(model_path, **load_kwargs)
    logger.info(f"Model loaded successfully: {model_path}")

    def _call(prompt: str, max_new_tokens: int = 512, temperature: float = 0.1) -> str:
        inputs = {k: v.to(model.device) for k, v in tokenizer(prompt, return_tensors="pt").items()}
        do_sample = temperature > 0
        with torch.no_grad():
            output_ids = model.generate(
                **inputs,
                do_sample=do_sample,
                temperature=temperature if do_sample else None,
                max_new_tokens=max_new_tokens,
            )
        # Decode only the newly generated tokens, not the input prompt
        generated_ids = output_ids[0, inputs["input_ids"].shape[1]:]
        return tokenizer.decode(generated_ids, skip_special_tokens=True).strip()

    return _call


def _openai_inference(system_prompt: str, user_prompt: str, settings: Settings) -> str:
    client = _get_openai_client(settings.openai_api_key, settings.ai_timeout_seconds)
    response = client.chat.completions.create(
        model=settings.openai_model,
        temperature=0,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
    )
    return response.choices[0].message.content or ""


def _local_inference(system_prompt: str, user_prompt: str, settings: Settings) -> str:
    model = _get_local_causal_lm(settings.local_review_model)
    return model(f"{system_prompt}\n\n{user_prompt}")


def run_inference(
    system_prompt: str,
    user_prompt: str,
    settings: Optional[Settings] = None,
) -> str:
    """
    Send one review prompt to the configured backend and return the raw text.

    Raises ReasonerUnavailable when no backend is configured; transport and
    model errors propagate so the caller can fall back.
    """
    settings = settings or get_settings()
    if not is_reasoner_configured(settings):
        raise ReasonerUnavailable(f"AI backend '{settings.ai_backend}' is not configured")

    logger.info(f"Running review inference with backend={settings.ai_backend}")
    if settings.ai_backend == "openai":
        result = _openai_inference(system_prompt, user_prompt, settings)
    else:
        result = _local_inference(system_prompt, user_prompt, settings)
    logger.info(f"Inference complete, response length: {len(result)} chars")
    return result
