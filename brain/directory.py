"""
directory.py — agent lookup and provider credential resolution.

AgentDirectory   in-process cache of AgentConfig snapshots keyed by agent id
CredentialCache  decrypted per-agent API keys (PBKDF2-derived Fernet key per
                 agent salt), falling back to the global provider key

Both caches are read-mostly: entries are only ever replaced wholesale and are
dropped with invalidate(agent_id) when the agent is updated elsewhere.
Decrypted keys never appear in logs.
"""
import base64
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.ext.asyncio import AsyncSession

from brain import store
from brain.errors import GenerationFailed, NotFound
from brain.schemas import AgentConfig

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SALT_BYTES = 16


# ---------------------------------------------------------------------------
# Key derivation / field encryption
# ---------------------------------------------------------------------------

def _fernet_for(secret: str, salt_hex: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=bytes.fromhex(salt_hex),
        iterations=PBKDF2_ITERATIONS,
    )
    key = kdf.derive(secret.encode("utf-8"))
    return Fernet(base64.urlsafe_b64encode(key))


def encrypt_api_key(plaintext: str, secret: str) -> tuple[str, str]:
    """Encrypt an API key with a fresh salt. Returns (ciphertext, salt_hex)."""
    salt_hex = os.urandom(SALT_BYTES).hex()
    token = _fernet_for(secret, salt_hex).encrypt(plaintext.encode("utf-8"))
    return token.decode("ascii"), salt_hex


def decrypt_api_key(ciphertext: str, salt_hex: str, secret: str) -> str:
    return _fernet_for(secret, salt_hex).decrypt(ciphertext.encode("ascii")).decode("utf-8")


# ---------------------------------------------------------------------------
# Agent directory
# ---------------------------------------------------------------------------

class AgentDirectory:
    """Agent id → AgentConfig, loaded from the agents table on first use."""

    def __init__(self) -> None:
        self._agents: dict[str, AgentConfig] = {}

    async def get(self, db: AsyncSession, agent_id: str) -> AgentConfig:
        agent = self._agents.get(agent_id)
        if agent is not None:
            return agent
        agent = await store.get_agent(db, agent_id)
        if agent is None:
            raise NotFound(f"Agent {agent_id} not found")
        self._agents[agent_id] = agent
        logger.debug("Agent config cached agent_id=%s", agent_id)
        return agent

    def invalidate(self, agent_id: Optional[str] = None) -> None:
        if agent_id is None:
            self._agents.clear()
        else:
            self._agents.pop(agent_id, None)
        logger.info("Agent cache invalidated agent_id=%s", agent_id or "*")


# ---------------------------------------------------------------------------
# Credential cache
# ---------------------------------------------------------------------------

class CredentialCache:
    """
    Resolves the API key used to call an agent's provider.

    Agents with an encrypted key get it decrypted once and cached; agents
    without one use fallback_keys[provider] from settings.
    """

    def __init__(self, secret: str, fallback_keys: Optional[dict[str, str]] = None) -> None:
        self._secret = secret
        self._fallback_keys = dict(fallback_keys or {})
        self._keys: dict[str, str] = {}

    def api_key_for(self, agent: AgentConfig) -> str:
        cached = self._keys.get(agent.id)
        if cached is not None:
            return cached

        if agent.encrypted_api_key and agent.encryption_salt:
            try:
                key = decrypt_api_key(agent.encrypted_api_key, agent.encryption_salt, self._secret)
            except (InvalidToken, ValueError) as exc:
                logger.error("API key decryption failed agent_id=%s", agent.id)
                raise GenerationFailed("Agent credentials could not be decrypted") from exc
        else:
            key = self._fallback_keys.get(agent.provider, "")

        if not key:
            logger.error("No API key configured agent_id=%s provider=%s", agent.id, agent.provider)
            raise GenerationFailed(f"No API key configured for provider '{agent.provider}'")

        self._keys[agent.id] = key
        return key

    def invalidate(self, agent_id: Optional[str] = None) -> None:
        if agent_id is None:
            self._keys.clear()
        else:
            self._keys.pop(agent_id, None)
