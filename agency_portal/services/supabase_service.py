import base64
import logging

from flask import current_app
from supabase import create_client

from agency_portal.errors import StorageError

logger = logging.getLogger(__name__)


def init_supabase(app):
    url = app.config.get('SUPABASE_URL')
    # Use service role key if available for backend operations, fallback to anon key
    key = app.config.get('SUPABASE_SERVICE_ROLE_KEY') or app.config.get('SUPABASE_KEY')

    if not url or not key:
        return None

    return create_client(url, key)


def to_data_url(content, content_type):
    encoded = base64.b64encode(content).decode('ascii')
    return f"data:{content_type};base64,{encoded}"


class StorageService:
    """
    Uploads files to Supabase Storage and returns a public URL.

    Without a configured Supabase client the bytes are returned inline as a
    base64 data URL so local development and tests keep working.
    """

    @staticmethod
    def client():
        return getattr(current_app, 'supabase', None)

    @staticmethod
    def upload(bucket, path, content, content_type):
        supabase = StorageService.client()
        if not supabase:
            logger.debug("Supabase not configured, storing %s inline", path)
            return to_data_url(content, content_type)

        try:
            supabase.storage.from_(bucket).upload(path, content, {"content-type": content_type})
            public_url = supabase.storage.from_(bucket).get_public_url(path)
        except Exception as e:
            logger.error("Supabase upload to %s/%s failed: %s", bucket, path, e)
            raise StorageError(f"Failed to upload file: {e}")

        logger.info("Uploaded %s to bucket %s", path, bucket)
        return public_url
