from pydantic_settings import BaseSettings
from typing import Optional, Literal

class Settings(BaseSettings):
    FIREBASE_KEY_PATH: Optional[str] = None
    FIREBASE_JSON: Optional[str] = None
    FIREBASE_PROJECT_ID: Optional[str] = None

    # "memory" runs the whole chat core without a Firebase project
    STORE_BACKEND: Literal["firestore", "memory"] = "firestore"

    CHATS_COLLECTION: str = "chats"
    MESSAGES_SUBCOLLECTION: str = "messages"
    USERS_COLLECTION: str = "users"

    GOOGLE_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "app.log"
    HOST: str = "0.0.0.0"
    PORT: int = 9090

    class Config:
        env_file = ".env"

settings = Settings()
