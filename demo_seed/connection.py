"""
Salesforce connection setup.

Tries, in order: an explicit instance URL + access token, username/password
with security token, then an access token from the Salesforce CLI (scratch
orgs and web-authenticated orgs).
"""

import json
import logging
import subprocess
from typing import Optional, Tuple

from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceAuthenticationFailed

from .config import SalesforceCredentials, SeedSettings, credentials_for
from .exceptions import ConnectionSetupError

logger = logging.getLogger(__name__)


def _sf_json(*args: str) -> dict:
    result = subprocess.run(['sf', *args, '--json'], capture_output=True, text=True, check=True)
    return json.loads(result.stdout)


def get_access_token_from_cli(username: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
    """Get an access token and instance URL from the Salesforce CLI."""
    aliases = []

    # Method 1: default target-org
    try:
        config_data = _sf_json('config', 'get', 'target-org')
        result_list = config_data.get('result', [])
        if isinstance(result_list, list) and result_list and result_list[0].get('value'):
            aliases.append(result_list[0]['value'])
    except (OSError, subprocess.CalledProcessError, json.JSONDecodeError) as e:
        logger.debug(f"No default target-org from sf CLI: {e}")

    # Method 2: org matching the configured username, then any live scratch org
    try:
        data = _sf_json('org', 'list')
        result = data.get('result', {})
        all_orgs = result.get('nonScratchOrgs', []) + result.get('scratchOrgs', [])
        for org in all_orgs:
            if username and org.get('username') == username:
                aliases.append(org.get('alias') or org['username'])
        for org in result.get('scratchOrgs', []):
            if not org.get('isExpired', False):
                aliases.append(org.get('alias') or org.get('username', ''))
    except (OSError, subprocess.CalledProcessError, json.JSONDecodeError) as e:
        logger.debug(f"Could not list orgs from sf CLI: {e}")

    for alias in aliases:
        if not alias:
            continue
        try:
            data = _sf_json('org', 'display', '--target-org', alias)
        except (OSError, subprocess.CalledProcessError, json.JSONDecodeError):
            continue
        access_token = data.get('result', {}).get('accessToken', '')
        instance_url = data.get('result', {}).get('instanceUrl', '')
        if access_token and instance_url:
            logger.info(f"Using Salesforce CLI org: {alias}")
            return access_token, instance_url

    return None, None


def connect(environment: str = "default", settings: Optional[SeedSettings] = None,
            credentials: Optional[SalesforceCredentials] = None) -> Salesforce:
    """Open a simple_salesforce session for the named environment."""
    settings = settings or SeedSettings.from_env()
    credentials = credentials or credentials_for(environment)
    version = settings.api_version.lstrip('v')

    logger.info(f"Connecting to Salesforce ({environment})...")

    if credentials.has_session:
        return Salesforce(instance_url=credentials.instance_url, session_id=credentials.access_token,
                          version=version)

    if credentials.has_password_login:
        try:
            kwargs = {}
            if credentials.domain:
                kwargs['domain'] = credentials.domain
            sf = Salesforce(username=credentials.username, password=credentials.password,
                            security_token=credentials.security_token, version=version, **kwargs)
            logger.info("Connected using username/password")
            return sf
        except SalesforceAuthenticationFailed as e:
            logger.warning(f"Username/password authentication failed: {e}; trying Salesforce CLI")

    access_token, instance_url = get_access_token_from_cli(credentials.username)
    if access_token and instance_url:
        logger.info("Connected using access token from Salesforce CLI")
        return Salesforce(instance_url=instance_url, session_id=access_token, version=version)

    raise ConnectionSetupError(
        f"Could not connect to Salesforce environment '{environment}'. "
        f"Check credentials or run 'sf org login web'."
    )
