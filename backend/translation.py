import logging

import requests

from errors import UpstreamServiceError, ValidationError

logger = logging.getLogger(__name__)

MYMEMORY_API_URL = "https://api.mymemory.translated.net/get"


def translate_text(
    text: str,
    target_lang: str,
    source_lang: str = "en",
    api_url: str = MYMEMORY_API_URL,
    timeout: float = 10,
) -> str:
    """Translate ``text`` with the free MyMemory API (no key needed)."""
    text = str(text or "").strip()
    target_lang = str(target_lang or "").strip().lower()
    if not text or not target_lang:
        raise ValidationError("Text and target language required")

    try:
        response = requests.get(
            api_url,
            params={"q": text, "langpair": f"{source_lang}|{target_lang}"},
            timeout=timeout,
        )
        payload = response.json()
    except requests.RequestException as exc:
        logger.error("Translation API error: %s", exc)
        raise UpstreamServiceError("Translation service error") from exc
    except ValueError as exc:
        logger.error("Error parsing translation response: %s", exc)
        raise UpstreamServiceError("Translation service error") from exc

    if not isinstance(payload, dict):
        raise UpstreamServiceError("Translation service error")

    response_data = payload.get("responseData")
    translated = (
        response_data.get("translatedText") if isinstance(response_data, dict) else None
    )
    if str(payload.get("responseStatus")) != "200" or not translated:
        logger.warning(
            "Translation to %s failed with status %s",
            target_lang,
            payload.get("responseStatus"),
        )
        raise UpstreamServiceError("Translation failed")
    return translated
