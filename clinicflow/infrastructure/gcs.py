"""
GCS bucket access for clinic state snapshots and billing sheets.
"""

import os
import logging
from google.cloud import storage
from google.cloud.exceptions import NotFound
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("gcs-manager")


class GCSBucketManager:
    def __init__(self, bucket_name, service_account_json_path=None):
        """
        Initializes the GCS Client (lazy - only on first use).

        :param bucket_name: The name of the GCS bucket.
        :param service_account_json_path: Path to service account JSON key.
                                          If None, uses GOOGLE_APPLICATION_CREDENTIALS
                                          or default environment auth.
        """
        self.bucket_name = bucket_name
        self.service_account_json_path = service_account_json_path
        self._client = None
        self._bucket = None

    def _ensure_initialized(self):
        """Lazy initialization of GCS client and bucket"""
        if self._client is None:
            try:
                project_id = os.getenv("PROJECT_ID")
                if self.service_account_json_path:
                    self._client = storage.Client.from_service_account_json(
                        self.service_account_json_path,
                        project=project_id
                    )
                else:
                    self._client = storage.Client(project=project_id)

                self._bucket = self._client.bucket(self.bucket_name)

                if not self._bucket.exists():
                    logger.warning("Bucket '%s' does not exist or you lack permission.", self.bucket_name)

            except Exception as e:
                logger.error("Error initializing GCS Client: %s", e)
                raise

    @property
    def bucket(self):
        self._ensure_initialized()
        return self._bucket

    def create_file_from_string(self, file_content, destination_blob_name, content_type="text/plain"):
        try:
            blob = self.bucket.blob(destination_blob_name)
            blob.upload_from_string(file_content, content_type=content_type)
            logger.info("Content uploaded to %s.", destination_blob_name)
            return True
        except Exception as e:
            logger.error("Failed to create file from string: %s", e)
            return False

    def read_file_as_string(self, source_blob_name):
        try:
            blob = self.bucket.blob(source_blob_name)
            return blob.download_as_text()
        except NotFound:
            logger.warning("File %s not found.", source_blob_name)
            return None
        except Exception as e:
            logger.error("Error reading file text: %s", e)
            return None
