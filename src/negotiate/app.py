import json
import os
import re
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlencode

import boto3
import requests

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEFAULT_API_VERSION = "2025-05-01-preview"
REGIONAL_TOKEN_URL = "https://{region}.api.cognitive.microsoft.com/sts/v1.0/issueToken"
RESOURCE_TOKEN_PATH = "/sts/v1.0/issueToken"
REALTIME_PATH = "/voice-live/realtime"
DIRECT_KEY_URL = "wss://{region}.api.speech.microsoft.com/voice/live/ws"

REGION_PATTERN = re.compile(r"^https://([^./:]+)\.[^/]")

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
}

PREFLIGHT_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET,POST,OPTIONS',
    'Access-Control-Allow-Headers': '*'
}


class NegotiationError(Exception):
    """Terminal failure of a single negotiation, reported to the caller as a 500"""


class ConfigurationError(NegotiationError):
    pass


class EndpointFormatError(NegotiationError):
    pass


class TokenFetchError(NegotiationError):
    pass


class ConstructionError(NegotiationError):
    pass


@dataclass(frozen=True)
class NegotiatorConfig:
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    api_version: str = DEFAULT_API_VERSION
    token_url: Optional[str] = None
    voice_key: Optional[str] = None
    voice_region: Optional[str] = None
    auth_mode: str = "token"
    token_timeout: Optional[float] = None

    def missing_fields(self):
        """Return (name, is_set) pairs for the settings the current mode requires"""
        if self.auth_mode == "key":
            required = [
                ('AZURE_VOICE_KEY', self.voice_key),
                ('AZURE_VOICE_REGION', self.voice_region),
            ]
        else:
            required = [
                ('AZURE_VOICE_LIVE_ENDPOINT', self.endpoint),
                ('AZURE_VOICE_LIVE_API_KEY', self.api_key),
                ('AZURE_VOICE_LIVE_MODEL', self.model),
            ]
        return [(name, bool(value and value.strip())) for name, value in required]


def _env(name):
    value = os.environ.get(name, '').strip()
    return value or None


def resolve_secret(secret_id):
    """Read an API key stored as a plain SecretString in Secrets Manager"""
    try:
        client = boto3.client('secretsmanager')
        response = client.get_secret_value(SecretId=secret_id)
        return response.get('SecretString') or None
    except Exception as e:
        logger.error(f"Error resolving API key secret {secret_id}: {str(e)}")
        return None


def load_config():
    """Build the negotiator configuration from the process environment"""
    endpoint = _env('AZURE_VOICE_LIVE_ENDPOINT')
    voice_key = _env('AZURE_VOICE_KEY')

    auth_mode = (_env('AZURE_VOICE_AUTH_MODE') or '').lower()
    if auth_mode not in ('token', 'key'):
        if auth_mode:
            logger.warning(f"Unknown AZURE_VOICE_AUTH_MODE '{auth_mode}', inferring from settings")
        auth_mode = 'key' if voice_key and not endpoint else 'token'

    api_key = _env('AZURE_VOICE_LIVE_API_KEY')
    secret_id = _env('AZURE_VOICE_LIVE_API_KEY_SECRET_ID')
    if not api_key and secret_id and auth_mode == 'token':
        api_key = resolve_secret(secret_id)

    timeout = _env('AZURE_VOICE_LIVE_TOKEN_TIMEOUT')
    token_timeout = None
    if timeout:
        try:
            token_timeout = float(timeout)
        except ValueError:
            logger.warning(f"Ignoring invalid AZURE_VOICE_LIVE_TOKEN_TIMEOUT: {timeout}")

    return NegotiatorConfig(
        endpoint=endpoint,
        api_key=api_key,
        model=_env('AZURE_VOICE_LIVE_MODEL'),
        api_version=_env('AZURE_VOICE_LIVE_API_VERSION') or DEFAULT_API_VERSION,
        token_url=_env('AZURE_VOICE_LIVE_TOKEN_URL'),
        voice_key=voice_key,
        voice_region=_env('AZURE_VOICE_REGION'),
        auth_mode=auth_mode,
        token_timeout=token_timeout,
    )


# Initialize configuration outside the handler for Lambda optimization
CONFIG = load_config()


def validate_config(config):
    fields = config.missing_fields()
    if all(is_set for _, is_set in fields):
        return
    status = ", ".join(
        f"{name}={'<set>' if is_set else '<not set>'}" for name, is_set in fields
    )
    raise ConfigurationError(f"Missing Voice Live configuration: {status}")


def derive_region(endpoint):
    """Extract the first hostname label of an https://{region}.{domain} endpoint"""
    match = REGION_PATTERN.match(endpoint or '')
    if not match:
        raise EndpointFormatError(
            f"Voice Live endpoint is not of the form https://{{region}}.{{domain}}: {endpoint}"
        )
    return match.group(1)


def token_url_for(config, region):
    if not config.token_url:
        return REGIONAL_TOKEN_URL.format(region=region)
    if config.token_url == 'resource':
        return config.endpoint.rstrip('/') + RESOURCE_TOKEN_PATH
    return config.token_url


def fetch_token(token_url, api_key, timeout=None):
    """Exchange the subscription key for a short-lived token. Single attempt."""
    try:
        response = requests.post(
            token_url,
            headers={'Ocp-Apim-Subscription-Key': api_key},
            data=b'',
            timeout=timeout
        )
    except requests.RequestException as e:
        raise TokenFetchError(f"Could not fetch Azure Voice Live token: {str(e)}") from e

    if response.status_code != 200:
        raise TokenFetchError(
            f"Could not fetch Azure Voice Live token: "
            f"Token request failed: {response.status_code} {response.text}"
        )
    if not response.text:
        raise TokenFetchError(
            f"Could not fetch Azure Voice Live token: "
            f"Token request failed: {response.status_code} empty token"
        )
    return response.text


def build_token_url(endpoint, api_version, model, token):
    base = endpoint.strip()
    if base.startswith('https://'):
        base = 'wss://' + base[len('https://'):]
    base = base.rstrip('/')

    params = [('api-version', api_version)]
    if model:
        params.append(('model', model))
    params.append(('token', token))
    return base + REALTIME_PATH + '?' + urlencode(params, quote_via=quote)


def build_key_url(region, api_key):
    return DIRECT_KEY_URL.format(region=quote(region, safe='')) + '?' + urlencode(
        [('api-key', api_key)], quote_via=quote
    )


def _response(status_code, headers, body=None):
    response = {'statusCode': status_code, 'headers': dict(headers)}
    if body is not None:
        response['body'] = body
    return response


def _error_response(message):
    return _response(500, dict(CORS_HEADERS, **{'Content-Type': 'text/plain'}), message)


def _negotiate_url(config):
    if config.auth_mode == 'key':
        logger.info(f"Building direct-key URL for region {config.voice_region}")
        try:
            return build_key_url(config.voice_region, config.voice_key)
        except Exception as e:
            raise ConstructionError(f"Could not build Voice Live URL: {str(e)}") from e

    region = derive_region(config.endpoint)
    token_url = token_url_for(config, region)
    logger.info(f"Requesting Voice Live token from {token_url}")
    token = fetch_token(token_url, config.api_key, config.token_timeout)

    try:
        return build_token_url(config.endpoint, config.api_version, config.model, token)
    except Exception as e:
        raise ConstructionError(f"Could not build Voice Live URL: {str(e)}") from e


def negotiate(config, request_method):
    """
    Produce the Voice Live WebSocket URL for one request

    Parameters:
    - config: NegotiatorConfig
    - request_method: inbound HTTP method

    Returns:
    - API Gateway proxy response
    """
    if (request_method or '').upper() == 'OPTIONS':
        return _response(204, PREFLIGHT_HEADERS)

    try:
        validate_config(config)
        ws_url = _negotiate_url(config)
    except NegotiationError as e:
        logger.error(f"{type(e).__name__}: {str(e)}")
        return _error_response(str(e))

    return _response(
        200,
        dict(CORS_HEADERS, **{'Content-Type': 'application/json'}),
        json.dumps({'url': ws_url})
    )


def request_method_of(event):
    """HTTP method for REST API (v1) and HTTP API (v2) payloads"""
    event = event or {}
    method = event.get('httpMethod')
    if not method:
        http = (event.get('requestContext') or {}).get('http') or {}
        method = http.get('method')
    return (method or 'GET').upper()


def lambda_handler(event, context):
    """Handle GET/POST/OPTIONS requests to /negotiate"""
    method = request_method_of(event)
    logger.info(f"Negotiate request received: {method}")
    return negotiate(CONFIG, method)
