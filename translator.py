# translator.py — OpenAI-backed translation for non-primary-language reports
import logging
from typing import Optional

from openai import OpenAI

from config import CONFIG

logger = logging.getLogger("translator")

LANGUAGE_NAMES = {"ms": "Malay", "en": "English", "id": "Indonesian", "zh": "Chinese", "ta": "Tamil"}

_client: Optional[OpenAI] = None


class TranslationError(Exception):
    """Raised when a translation could not be produced."""


def get_client() -> Optional[OpenAI]:
    global _client
    if _client is None and CONFIG.analyzer.openai_api_key:
        _client = OpenAI(api_key=CONFIG.analyzer.openai_api_key, timeout=CONFIG.analyzer.openai_timeout)
    return _client


def translate_text(text: str, from_lang: str, target_lang: str = "en", client: Optional[OpenAI] = None) -> str:
    """
    Translate `text` from `from_lang` into `target_lang`.

    Raises TranslationError when no client is configured, the call fails or the
    model returns nothing; callers decide whether to keep the original text.
    """
    if not text or from_lang.lower() == target_lang.lower():
        return text

    client = client or get_client()
    if client is None:
        raise TranslationError("OpenAI client not initialized (missing OPENAI_API_KEY)")

    source_name = LANGUAGE_NAMES.get(from_lang.lower(), from_lang)
    target_name = LANGUAGE_NAMES.get(target_lang.lower(), target_lang)
    try:
        response = client.chat.completions.create(
            model=CONFIG.analyzer.openai_model,
            messages=[
                {"role": "system", "content": f"Translate the following {source_name} text into {target_name}. "
                                              f"Reply with the translation only."},
                {"role": "user", "content": text},
            ],
            temperature=0.0,
            timeout=CONFIG.analyzer.openai_timeout,
        )
    except Exception as e:
        logger.warning("Translation %s->%s failed: %s", from_lang, target_lang, e)
        raise TranslationError(str(e)) from e

    translated = (response.choices[0].message.content or "").strip()
    if not translated:
        raise TranslationError("empty translation")
    return translated
