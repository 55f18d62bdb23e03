"""gesmind-core: identity bootstrap and account-security setup flow."""

from .bootstrap import (
    ProviderBootstrap,
    ProviderFactory,
    clear_bootstrap_cache,
    default_provider_factory,
    get_bootstrap,
    preconfigured_from_env,
)
from .challenge import (
    PRIMARY_SURFACE,
    RECOVERY_SURFACE,
    ChallengeError,
    ChallengeRenderer,
    ChallengeVerifier,
    ChallengeWidget,
    TokenSourceRenderer,
)
from .firebase import FirebaseRestProvider, translate_transport_error
from .flow import FlowError, SetupFlow, flow_operation, password_reset_return_seconds
from .memory_provider import InMemoryIdentityProvider, OutboundMessage
from .provider import (
    FederatedCredential,
    FederatedPrompt,
    Identity,
    IdentityProvider,
    OfflinePersistenceError,
    ProviderError,
)
from .provider_config import ConfigurationError, ProviderConfig, parse_provider_config
from .state import (
    AuthStep,
    CompleteStep,
    ConfigStep,
    FlowState,
    OperatingMode,
    SecurityCheckStep,
    is_identity_complete,
    missing_channel,
)
from .storage import (
    CONFIG_KEY,
    MODE_KEY,
    SESSION_KEY,
    FileStateStore,
    MemoryStateStore,
    StateStore,
    state_store_path,
)
from .transport import TransportError, request_json
from .verification import VerificationError, VerificationSession, VerificationSlot

__all__ = [
    "CONFIG_KEY",
    "MODE_KEY",
    "PRIMARY_SURFACE",
    "RECOVERY_SURFACE",
    "SESSION_KEY",
    "AuthStep",
    "ChallengeError",
    "ChallengeRenderer",
    "ChallengeVerifier",
    "ChallengeWidget",
    "CompleteStep",
    "ConfigStep",
    "ConfigurationError",
    "FederatedCredential",
    "FederatedPrompt",
    "FileStateStore",
    "FirebaseRestProvider",
    "FlowError",
    "FlowState",
    "Identity",
    "IdentityProvider",
    "InMemoryIdentityProvider",
    "MemoryStateStore",
    "OfflinePersistenceError",
    "OperatingMode",
    "OutboundMessage",
    "ProviderBootstrap",
    "ProviderConfig",
    "ProviderError",
    "ProviderFactory",
    "SecurityCheckStep",
    "SetupFlow",
    "StateStore",
    "TokenSourceRenderer",
    "TransportError",
    "VerificationError",
    "VerificationSession",
    "VerificationSlot",
    "clear_bootstrap_cache",
    "default_provider_factory",
    "flow_operation",
    "get_bootstrap",
    "is_identity_complete",
    "missing_channel",
    "parse_provider_config",
    "password_reset_return_seconds",
    "preconfigured_from_env",
    "request_json",
    "state_store_path",
    "translate_transport_error",
]
