import logging
import os

import firebase_admin
from firebase_admin import credentials, firestore

from .settings import settings

logger = logging.getLogger(__name__)


def _init_client():
    """Initialize Firebase once and return a Firestore client (or None if unconfigured)."""
    if not firebase_admin._apps:
        key_path = settings.FIREBASE_CREDENTIALS_PATH
        try:
            if key_path and os.path.exists(key_path):
                firebase_admin.initialize_app(credentials.Certificate(key_path))
            elif os.getenv("GOOGLE_APPLICATION_CREDENTIALS") or os.getenv("FIRESTORE_EMULATOR_HOST"):
                firebase_admin.initialize_app()
            else:
                logger.warning("Firestore is not configured (no key at %s)", key_path)
                return None
        except ValueError as e:
            logger.error("Firebase initialization failed: %s", e)
            return None
    return firestore.client()


db = _init_client()
