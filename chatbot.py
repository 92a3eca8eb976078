#!/usr/bin/env python3
"""
###############################################################################
CHATBOT.PY

Command-line chat front-end for a Solana-enabled ReAct agent.

- Reads SOLANA_PRIVATE_KEY, RPC_URL and OPENAI_API_KEY (a local .env file is
  loaded first) and validates them before anything touches the network.
- Builds a LangGraph ReAct agent from a ChatOpenAI model, the coinbase-agentkit
  Solana wallet tools and an in-memory checkpointer.
- Reads one message from the terminal, streams the agent's reply (retrying the
  start of the stream with exponential backoff) and prints every chunk.

Run it with:
   python chatbot.py
###############################################################################
"""

# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#                            IMPORTS
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
import logging
import os
import re
import sys
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import base58
import colorlog
from coinbase_agentkit import (
    AgentKit,
    AgentKitConfig,
    WalletProvider,
    pyth_action_provider,
    wallet_action_provider,
)
from coinbase_agentkit.network import Network
from coinbase_agentkit_langchain import get_langchain_tools

# Solana RPC and signing, already pulled in by coinbase-agentkit
from solana.rpc.api import Client as SolanaClient
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from dotenv import load_dotenv

# The LangChain / LLM stack
from langchain_core.messages import HumanMessage
from langchain_openai import ChatOpenAI
from langgraph.checkpoint.memory import MemorySaver
from langgraph.prebuilt import create_react_agent

from tenacity import Retrying, stop_after_attempt

load_dotenv()

logger = logging.getLogger(__name__)

MODEL_NAME = "gpt-3.5-turbo"
TEMPERATURE = 0.7

# Every run starts a fresh MemorySaver, so this only groups turns within one process.
THREAD_ID = "Solana Agent Kit testing!"

SEPARATOR = "-------------------"
QUOTA_MESSAGE = "You have exceeded your OpenAI quota. Please check your plan or usage."

BASE58_PATTERN = re.compile(r"[1-9A-HJ-NP-Za-km-z]+")

ENV_PRIVATE_KEY = "SOLANA_PRIVATE_KEY"
ENV_RPC_URL = "RPC_URL"
ENV_OPENAI_API_KEY = "OPENAI_API_KEY"


###############################################################################
#                              ERRORS
###############################################################################
class ChatbotError(Exception):
    """Base class for every failure that ends a chat run."""


class ConfigurationError(ChatbotError):
    """The environment-supplied configuration is unusable."""


class MissingConfigurationError(ConfigurationError):
    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            "Missing required environment variables: "
            f"{', '.join(self.missing)}. Please check your .env file."
        )


class InvalidFormatError(ConfigurationError):
    pass


class InvalidEndpointError(ConfigurationError):
    pass


class BootstrapFailure(ChatbotError):
    """The agent toolkit could not be constructed. Never retried."""


class PromptError(ChatbotError):
    pass


class StreamInitiationFailure(ChatbotError):
    """The agent stream could not be started within the retry budget."""


class StreamConsumptionFailure(ChatbotError):
    """The agent stream broke after it had started. Never retried."""


###############################################################################
#                 CONFIGURATION & CREDENTIAL VALIDATION
###############################################################################
@dataclass(frozen=True)
class ChatbotConfig:
    private_key: str
    rpc_url: str
    openai_api_key: str


def load_config(environ: Optional[Mapping[str, str]] = None) -> ChatbotConfig:
    """Read the three credentials once. Missing values become empty strings."""
    if environ is None:
        environ = os.environ
    return ChatbotConfig(
        private_key=environ.get(ENV_PRIVATE_KEY, "") or "",
        rpc_url=environ.get(ENV_RPC_URL, "") or "",
        openai_api_key=environ.get(ENV_OPENAI_API_KEY, "") or "",
    )


def validate_presence(config: ChatbotConfig) -> None:
    missing = [
        name
        for name, value in (
            (ENV_PRIVATE_KEY, config.private_key),
            (ENV_RPC_URL, config.rpc_url),
            (ENV_OPENAI_API_KEY, config.openai_api_key),
        )
        if not value
    ]
    if missing:
        raise MissingConfigurationError(missing)


def validate_private_key(key: str) -> None:
    """Reject anything that is not a non-empty base58 string (no 0, I, O or l)."""
    if not key or not BASE58_PATTERN.fullmatch(key):
        raise InvalidFormatError(
            "Invalid Solana private key format. Please ensure it's a valid base58 string."
        )


def validate_rpc_url(url: str) -> None:
    if not url.startswith(("http://", "https://")):
        raise InvalidEndpointError("RPC URL must start with http:// or https://")


def validate_config(config: ChatbotConfig) -> None:
    """
    Fail fast on the first problem: presence, then key format, then endpoint.
    """
    validate_presence(config)
    validate_private_key(config.private_key)
    validate_rpc_url(config.rpc_url)


###############################################################################
#                              LOGGING
###############################################################################
def setup_logging(level: Optional[str] = None, force: bool = False) -> None:
    """
    Send diagnostics to stderr through a colored handler. Standard output is
    reserved for the agent's reply.

    The level is taken from ``level``, then CHATBOT_LOG_LEVEL, then INFO.
    """
    root_logger = logging.getLogger()
    if root_logger.handlers and not force:
        return
    if force:
        root_logger.handlers.clear()

    level_name = (level or os.getenv("CHATBOT_LOG_LEVEL", "INFO")).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    handler = colorlog.StreamHandler(sys.stderr)
    handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(levelname)-8s%(reset)s %(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    root_logger.addHandler(handler)


###############################################################################
#                    SOLANA KEYPAIR WALLET PROVIDER
###############################################################################
LAMPORTS_PER_SOL = 10**9


def solana_network_id(rpc_url: str) -> str:
    """Guess the AgentKit network id from the cluster named in the RPC URL."""
    if "devnet" in rpc_url:
        return "solana-devnet"
    if "testnet" in rpc_url:
        return "solana-testnet"
    return "solana-mainnet"


class KeypairSolanaWalletProvider(WalletProvider):
    """
    AgentKit wallet provider that signs locally with a base58 Solana secret key
    and talks to the cluster through ``rpc_url``.

    Accepts either the 64-byte keypair export or a bare 32-byte seed.
    """

    def __init__(self, private_key: str, rpc_url: str):
        raw = base58.b58decode(private_key)
        if len(raw) == 32:
            self._keypair = Keypair.from_seed(raw)
        elif len(raw) == 64:
            self._keypair = Keypair.from_bytes(raw)
        else:
            raise ValueError(f"Solana secret key must decode to 32 or 64 bytes, got {len(raw)}")
        self._connection = SolanaClient(rpc_url)
        self._network = Network(
            protocol_family="svm",
            network_id=solana_network_id(rpc_url),
            chain_id=None,
        )

    def get_address(self) -> str:
        return str(self._keypair.pubkey())

    def get_network(self) -> Network:
        return self._network

    def get_balance(self) -> Decimal:
        """Balance in lamports."""
        resp = self._connection.get_balance(self._keypair.pubkey())
        return Decimal(resp.value)

    def sign_message(self, message: str) -> str:
        return str(self._keypair.sign_message(message.encode("utf-8")))

    def get_name(self) -> str:
        return "keypair_solana_wallet_provider"

    def native_transfer(self, to: str, value: Decimal) -> str:
        """Send ``value`` SOL to ``to`` and return the transaction signature."""
        lamports = int(Decimal(value) * LAMPORTS_PER_SOL)
        instruction = transfer(
            TransferParams(
                from_pubkey=self._keypair.pubkey(),
                to_pubkey=Pubkey.from_string(to),
                lamports=lamports,
            )
        )
        blockhash = self._connection.get_latest_blockhash().value.blockhash
        tx = Transaction.new_signed_with_payer(
            [instruction], self._keypair.pubkey(), [self._keypair], blockhash
        )
        return str(self._connection.send_transaction(tx).value)


###############################################################################
#                      INITIALIZE THE AGENT
###############################################################################
def initialize_agent(config: ChatbotConfig) -> Tuple[Any, Dict[str, Any]]:
    """
    Validate the configuration, then build the ReAct agent with Solana tools.

    Returns the agent and the session config that scopes its checkpointed
    conversation. Toolkit errors are wrapped in BootstrapFailure.
    """
    validate_config(config)

    try:
        llm = ChatOpenAI(
            model=MODEL_NAME,
            temperature=TEMPERATURE,
            api_key=config.openai_api_key,
        )

        wallet_provider = KeypairSolanaWalletProvider(config.private_key, config.rpc_url)
        agentkit = AgentKit(
            AgentKitConfig(
                wallet_provider=wallet_provider,
                action_providers=[
                    wallet_action_provider(),
                    pyth_action_provider(),
                ],
            )
        )
        tools = get_langchain_tools(agentkit)

        # Store buffered conversation history in memory
        memory = MemorySaver()
        agent = create_react_agent(llm, tools, checkpointer=memory)
    except Exception as e:
        logger.error("Error initializing Solana agent: %s", e)
        raise BootstrapFailure(f"Failed to initialize the Solana agent: {e}") from e

    logger.debug("Agent ready with %d tools", len(tools))
    config_dict = {"configurable": {"thread_id": THREAD_ID}}
    return agent, config_dict


###############################################################################
#                 RETRY-WRAPPED STREAMING SESSION
###############################################################################
@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 3
    factor: float = 2
    min_timeout: float = 1.0  # seconds


DEFAULT_RETRY_POLICY = RetryPolicy()


def backoff_delay(attempt: int, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> float:
    """Seconds to wait before ``attempt`` (1-based). The first attempt never waits."""
    if attempt < 2:
        return 0.0
    return policy.min_timeout * policy.factor ** (attempt - 2)


@dataclass(frozen=True)
class Chunk:
    """One streamed update: ``kind`` is "agent", "tools" or None for other nodes."""

    kind: Optional[str]
    content: Any = None

    @property
    def is_agent_step(self) -> bool:
        return self.kind == "agent"

    @property
    def is_tool_step(self) -> bool:
        return self.kind == "tools"

    @classmethod
    def from_update(cls, update: Mapping[str, Any]) -> "Chunk":
        for kind in ("agent", "tools"):
            if kind in update:
                return cls(kind, update[kind]["messages"][0].content)
        return cls(None)


_EXHAUSTED = object()


def _has_pending_step(agent: Any, session_config: Dict[str, Any]) -> bool:
    """True when the checkpointed thread stopped before finishing its last step."""
    get_state = getattr(agent, "get_state", None)
    if get_state is None:
        return False
    return bool(get_state(session_config).next)


def run_turn(
    agent: Any,
    prompt: str,
    session_config: Dict[str, Any],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Optional[Callable[[float], None]] = None,
) -> Iterator[Chunk]:
    """
    Start streaming the agent's reply to ``prompt`` and return the chunks.

    Starting the stream (calling ``agent.stream`` and pulling its first update)
    is retried per ``policy``; chunks after the first are never retried.

    The prompt is checkpointed before the model runs, so a retry whose thread
    still has a pending step resumes it instead of sending the prompt again.
    """

    def start_stream(attempt_number):
        payload = {"messages": [HumanMessage(content=prompt)]}
        if attempt_number > 1 and _has_pending_step(agent, session_config):
            logger.debug("Resuming pending step on attempt %d", attempt_number)
            payload = None
        stream = iter(agent.stream(payload, session_config))
        return stream, next(stream, _EXHAUSTED)

    def log_failed_attempt(retry_state):
        error = retry_state.outcome.exception()
        if retry_state.attempt_number > policy.retries:
            logger.warning("Attempt %d failed: %s", retry_state.attempt_number, error)
        else:
            logger.warning("Attempt %d failed: %s. Retrying...", retry_state.attempt_number, error)

    if sleep is None:
        sleep = time.sleep

    retryer = Retrying(
        stop=stop_after_attempt(policy.retries + 1),
        wait=lambda retry_state: backoff_delay(retry_state.attempt_number + 1, policy),
        after=log_failed_attempt,
        sleep=sleep,
        reraise=True,
    )
    try:
        for attempt in retryer:
            with attempt:
                stream, first = start_stream(attempt.retry_state.attempt_number)
    except Exception as e:
        logger.error("Final retry failed. No more retries left.")
        raise StreamInitiationFailure(
            f"Could not start the agent stream after {policy.retries + 1} attempts: {e}"
        ) from e

    return _drain(stream, first)


def _drain(stream: Iterator[Any], first: Any) -> Iterator[Chunk]:
    update = first
    while update is not _EXHAUSTED:
        try:
            chunk = Chunk.from_update(update)
        except Exception as e:
            raise StreamConsumptionFailure(f"Malformed agent update {update!r}: {e}") from e
        yield chunk
        try:
            update = next(stream, _EXHAUSTED)
        except Exception as e:
            raise StreamConsumptionFailure(f"Agent stream failed mid-response: {e}") from e


def render_chunks(chunks: Iterator[Chunk]) -> int:
    """Print each chunk and a separator as it arrives. Returns how many were printed."""
    count = 0
    for chunk in chunks:
        if chunk.is_agent_step or chunk.is_tool_step:
            print(chunk.content)
        print(SEPARATOR)
        count += 1
    return count


###############################################################################
#                      ENTRY POINT
###############################################################################
def is_quota_error(error: Optional[BaseException]) -> bool:
    """True when ``error`` or anything in its cause chain is an HTTP 429."""
    while error is not None:
        if getattr(error, "status_code", None) == 429 or "429" in str(error):
            return True
        error = error.__cause__
    return False


def prompt_user(question: str = "Enter your message: ") -> str:
    try:
        return input(question)
    except EOFError as e:
        raise PromptError("No message entered.") from e


def run_chat(
    environ: Optional[Mapping[str, str]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> int:
    """Run a single chat turn end to end. Returns the number of chunks printed."""
    agent, config = initialize_agent(load_config(environ))
    user_prompt = prompt_user()
    chunks = run_turn(agent, user_prompt, config, sleep=sleep)
    return render_chunks(chunks)


def main() -> int:
    """Run one chat turn; 0 on success, 1 on any failure."""
    setup_logging()
    try:
        run_chat()
    except Exception as e:
        if is_quota_error(e):
            logger.error(QUOTA_MESSAGE)
        else:
            logger.error("Error in chat: %r", e)
        logger.error("An error occurred: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
