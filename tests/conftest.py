"""Root test conftest: ensure required environment variables are set."""

import os


def pytest_configure(config):
    """Set dummy values for the AWS settings the config loader reads at import time."""
    _defaults = {
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_DEFAULT_REGION': 'us-east-1',
        'OPENSEARCH_ENDPOINT': 'search-test.us-east-1.es.amazonaws.com',
        'NEPTUNE_ENDPOINT': 'neptune-test.us-east-1.neptune.amazonaws.com',
        'LOG_LEVEL': 'WARNING',
    }
    for key, value in _defaults.items():
        if key not in os.environ:
            os.environ[key] = value
