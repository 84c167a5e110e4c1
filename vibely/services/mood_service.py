import google.generativeai as genai
import unicodedata, asyncio, logging
from typing import Optional

from vibely.config.settings import settings
from vibely.utils.errors import InvalidInput

logger = logging.getLogger(__name__)

MOOD_PROMPT = """You are a mood detection assistant.
Analyze the following message and detect the sender's mood.

Message: "{message}"

The message can be in English, Hindi, or Hinglish (a mix of Hindi and English).

Reply with only one emoji that best represents the mood.
Do not include any words, punctuation, or explanation, only the emoji.
Examples: 😊 😢 😡 😍 😴 😐 🤔 😂 😔 😱"""

NEUTRAL_MOOD = "😐"

# Position on the mood meter, 0 (angry) .. 1 (very happy)
MOOD_LEVELS = {
    "😊": 1.0, "😄": 1.0, "😁": 1.0, "😍": 1.0,
    "🙂": 0.75, "😌": 0.75, "😅": 0.75,
    "😐": 0.5, "😕": 0.5,
    "😢": 0.25, "😭": 0.25, "😞": 0.25,
    "😡": 0.1, "😠": 0.1, "🤬": 0.1,
}


def mood_level(mood: str) -> float:
    return MOOD_LEVELS.get(mood, 0.5)


def extract_emoji(raw: str) -> str:
    """Keep only pictographic characters; fall back to the first character."""
    text = raw.strip()
    emoji_only = "".join(
        ch for ch in text
        if unicodedata.category(ch) == "So" or ch in ("\u200d", "\ufe0f")
    ).strip("\u200d")
    if emoji_only:
        return emoji_only
    return text[:1] or NEUTRAL_MOOD


class MoodDetectorUnavailable(Exception):
    pass


class MoodDetector:

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_API_KEY
        self.model_name = model_name or settings.GEMINI_MODEL
        self._model = None

    def _get_model(self):
        if not self.api_key:
            raise MoodDetectorUnavailable("Gemini API key is not configured")
        if self._model is None:
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model_name)
        return self._model

    async def detect(self, message: str) -> str:
        if not message or not message.strip():
            raise InvalidInput("Message is required")

        model = self._get_model()
        prompt = MOOD_PROMPT.format(message=message.strip())

        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, model.generate_content, prompt)

        mood = extract_emoji(response.text or "")
        logger.info(f"Detected mood: {mood}")
        return mood


_mood_detector: Optional[MoodDetector] = None


def get_mood_detector() -> MoodDetector:
    global _mood_detector
    if _mood_detector is None:
        _mood_detector = MoodDetector()
    return _mood_detector
