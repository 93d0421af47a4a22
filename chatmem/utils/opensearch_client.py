"""
OpenSearch client wrapper for the memory index.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

CONTENT_KEYWORD_LIMIT = 8000


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built opensearch-py client (created from config if None)
        """
        self.config = config
        self.index_name = config.index_name

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_body(self) -> Dict[str, Any]:
        """Mapping for memory documents."""
        return {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'user_id': {
                        'type': 'keyword'
                    },
                    'content': {
                        'type': 'text',
                        'fields': {
                            'keyword': {
                                'type': 'keyword',
                                'ignore_above': CONTENT_KEYWORD_LIMIT
                            }
                        }
                    },
                    'category': {
                        'type': 'keyword'
                    },
                    'importance': {
                        'type': 'integer'
                    },
                    'tags': {
                        'type': 'keyword'
                    },
                    'source': {
                        'type': 'keyword'
                    },
                    'source_excerpt': {
                        'type': 'text',
                        'index': False
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    },
                    'timestamp': {
                        'type': 'date'
                    },
                    'last_accessed': {
                        'type': 'date'
                    },
                    'access_count': {
                        'type': 'integer'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

    def create_index_if_not_exists(self, wait_seconds: float = 15) -> str:
        """
        Create the memory index if it doesn't exist.

        Args:
            wait_seconds: Time to wait for a freshly created index to sync

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=self.index_name, body=self.index_body())
            logger.info(f'Created index {self.index_name}')
            if response.get('acknowledged', False):
                if wait_seconds:
                    logger.info(f'Waiting {wait_seconds}s for index {self.index_name} sync-up...')
                    time.sleep(wait_seconds)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def index_document(self, document: Dict[str, Any], doc_id: str) -> bool:
        """
        Index a document under an explicit id.

        Args:
            document: Document to index
            doc_id: Document id

        Returns:
            True if indexing was successful, False otherwise
        """
        try:
            response = self.client.index(index=self.index_name, body=document, id=doc_id)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id} in {self.index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def search(self, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Run a search and flatten the hits.

        Args:
            body: OpenSearch query body

        Returns:
            List of {'id', 'score', 'document'} dictionaries
        """
        try:
            response = self.client.search(index=self.index_name, body=body)
            return [{'id': hit['_id'], 'score': hit.get('_score'), 'document': hit['_source']} for hit in response['hits']['hits']]

        except OpenSearchException as e:
            logger.error(f'Error performing search: {e}')
            raise OpenSearchError(f'Search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in search: {e}')
            raise OpenSearchError(f'Unexpected error in search: {e}')

    def raw_search(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Run a search and return the raw response (aggregations, totals)."""
        try:
            return self.client.search(index=self.index_name, body=body)
        except OpenSearchException as e:
            logger.error(f'Error performing search: {e}')
            raise OpenSearchError(f'Search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in search: {e}')
            raise OpenSearchError(f'Unexpected error in search: {e}')

    def get_document(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a document by id.

        Args:
            doc_id: Document id

        Returns:
            Document source if found, None otherwise
        """
        try:
            response = self.client.get(index=self.index_name, id=doc_id)
            if not response.get('found', False):
                return None
            return response['_source']

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting document: {e}')

    def update_document(self,
                        doc_id: str,
                        partial: Optional[Dict[str, Any]] = None,
                        script: Optional[Dict[str, Any]] = None) -> bool:
        """
        Apply a partial update or a painless script to a document.

        Args:
            doc_id: Document id
            partial: Fields to overwrite
            script: Script body ({'source', 'params'})

        Returns:
            True if the document was updated, False if it does not exist
        """
        body = {'script': script} if script else {'doc': partial or {}}
        try:
            response = self.client.update(index=self.index_name, id=doc_id, body=body)
            return response.get('result') in ['updated', 'noop']

        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for update')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error updating document: {e}')

    def delete_document(self, doc_id: str) -> bool:
        """
        Delete a document from the index.

        Args:
            doc_id: Document ID to delete

        Returns:
            True if deletion was successful, False otherwise
        """
        try:
            response = self.client.delete(index=self.index_name, id=doc_id)

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {self.index_name}')
            else:
                logger.warning(f'Document {doc_id} not found for deletion')

            return success

        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting document: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
