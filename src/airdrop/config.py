import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

from xrpl import CryptoAlgorithm
from xrpl.wallet import Wallet

import airdrop.constants as C
from airdrop.constants import CommitmentLevel
from airdrop.errors import InvalidCapacity

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(config_file.read_text())
fw = cfg["funding_account"]
cfg["funding_account"]["seed"] = os.getenv("FUNDING_SEED", fw["seed"])


def _host(section: str) -> str:
    s = cfg[section]
    return s["docker"] if Path("/.dockerenv").is_file() else s["local"]


RPC = os.getenv("RPC_URL", f"http://{_host('rippled')}:{cfg['rippled']['rpc_port']}")
CLIO = os.getenv("CLIO_URL", f"http://{_host('clio')}:{cfg['clio']['rpc_port']}")


@dataclass(frozen=True)
class EngineConfig:
    capacity: int = C.DEFAULT_CAPACITY
    max_retries: int = C.DEFAULT_MAX_RETRIES
    inter_attempt_delay_ms: int = C.DEFAULT_INTER_ATTEMPT_DELAY_MS
    commitment_level: CommitmentLevel = CommitmentLevel.VALIDATED

    def __post_init__(self):
        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int) or self.capacity < 1:
            raise InvalidCapacity(self.capacity)
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.inter_attempt_delay_ms < 0:
            raise ValueError(f"inter_attempt_delay_ms must be >= 0, got {self.inter_attempt_delay_ms}")
        # Accept plain strings from TOML / request bodies.
        object.__setattr__(self, "commitment_level", CommitmentLevel(self.commitment_level))

    @property
    def delay(self) -> float:
        return self.inter_attempt_delay_ms / 1000

    @classmethod
    def from_dict(cls, d: dict) -> "EngineConfig":
        known = {k: d[k] for k in ("capacity", "max_retries", "inter_attempt_delay_ms", "commitment_level") if k in d}
        return cls(**known)


@dataclass(frozen=True)
class LedgerConfig:
    horizon: int = C.HORIZON
    poll_interval: float = C.POLL_INTERVAL
    submit_timeout: float = C.SUBMIT_TIMEOUT
    rpc_timeout: float = C.RPC_TIMEOUT

    @classmethod
    def from_dict(cls, d: dict) -> "LedgerConfig":
        return cls(**{k: d[k] for k in ("horizon", "poll_interval", "submit_timeout", "rpc_timeout") if k in d})


def make_payer() -> Wallet:
    fw = cfg["funding_account"]
    return Wallet.from_seed(fw["seed"], algorithm=CryptoAlgorithm(fw.get("algorithm", "secp256k1")))


engine_config = EngineConfig.from_dict(cfg.get("engine", {}))
ledger_config = LedgerConfig.from_dict(cfg.get("ledger", {}))
