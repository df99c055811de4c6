import pytest
from unittest.mock import MagicMock

from src.negotiate.app import NegotiatorConfig

VOICE_ENV_VARS = [
    'AZURE_VOICE_LIVE_ENDPOINT',
    'AZURE_VOICE_LIVE_API_KEY',
    'AZURE_VOICE_LIVE_API_KEY_SECRET_ID',
    'AZURE_VOICE_LIVE_MODEL',
    'AZURE_VOICE_LIVE_API_VERSION',
    'AZURE_VOICE_LIVE_TOKEN_URL',
    'AZURE_VOICE_LIVE_TOKEN_TIMEOUT',
    'AZURE_VOICE_KEY',
    'AZURE_VOICE_REGION',
    'AZURE_VOICE_AUTH_MODE',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test without any Voice Live settings in the environment"""
    for name in VOICE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def aws_env(monkeypatch):
    """Set fake AWS credentials so boto3 never touches a real account"""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'test-access-key')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'test-secret-key')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def env_vars(monkeypatch):
    """Set the token-mode environment variables"""
    monkeypatch.setenv('AZURE_VOICE_LIVE_ENDPOINT', 'https://foo.voice.azure.com')
    monkeypatch.setenv('AZURE_VOICE_LIVE_API_KEY', 'secret-key')
    monkeypatch.setenv('AZURE_VOICE_LIVE_MODEL', 'gpt-4o')


@pytest.fixture
def token_config():
    return NegotiatorConfig(
        endpoint='https://foo.voice.azure.com',
        api_key='secret-key',
        model='gpt-4o',
    )


@pytest.fixture
def key_config():
    return NegotiatorConfig(
        voice_key='k1',
        voice_region='eastus',
        auth_mode='key',
    )


def make_token_response(status_code=200, text='abc123'):
    """Create a mock requests.Response for the token endpoint"""
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


@pytest.fixture
def token_ok():
    return make_token_response(200, 'abc123')


@pytest.fixture
def token_unauthorized():
    return make_token_response(401, 'Access denied due to invalid subscription key.')


@pytest.fixture
def rest_get_event():
    """Create a mock API Gateway REST (v1) GET event"""
    return {
        'resource': '/negotiate',
        'path': '/negotiate',
        'httpMethod': 'GET',
        'headers': {'Origin': 'https://example.com'},
        'requestContext': {
            'resourcePath': '/negotiate',
            'httpMethod': 'GET',
            'stage': 'prod'
        },
        'body': None
    }


@pytest.fixture
def rest_options_event():
    """Create a mock API Gateway REST (v1) CORS preflight event"""
    return {
        'resource': '/negotiate',
        'path': '/negotiate',
        'httpMethod': 'OPTIONS',
        'headers': {
            'Origin': 'https://example.com',
            'Access-Control-Request-Method': 'POST'
        },
        'requestContext': {
            'resourcePath': '/negotiate',
            'httpMethod': 'OPTIONS',
            'stage': 'prod'
        },
        'body': None
    }


@pytest.fixture
def http_api_post_event():
    """Create a mock API Gateway HTTP API (v2) POST event"""
    return {
        'version': '2.0',
        'routeKey': 'POST /negotiate',
        'rawPath': '/negotiate',
        'requestContext': {
            'http': {
                'method': 'POST',
                'path': '/negotiate'
            },
            'stage': '$default'
        },
        'body': ''
    }


@pytest.fixture
def token_empty():
    return make_token_response(200, '')
