import firebase_admin, json, logging
from firebase_admin import credentials, firestore
from vibely.config.settings import settings

logger = logging.getLogger(__name__)

_db = None


def init_firebase():
    """Initialize the Firebase app once and return the Firestore client."""
    global _db

    if _db is not None:
        return _db

    if not firebase_admin._apps:

        if settings.FIREBASE_JSON:
            # Hosted deployments ship the service account inline
            cred = credentials.Certificate(json.loads(settings.FIREBASE_JSON))
        elif settings.FIREBASE_KEY_PATH:
            cred = credentials.Certificate(settings.FIREBASE_KEY_PATH)
        else:
            # Application default credentials (emulator, GCE, Cloud Run)
            cred = credentials.ApplicationDefault()

        options = {}
        if settings.FIREBASE_PROJECT_ID:
            options["projectId"] = settings.FIREBASE_PROJECT_ID

        firebase_admin.initialize_app(cred, options)
        logger.info("Firebase app initialized")

    _db = firestore.client()
    return _db
