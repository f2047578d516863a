import copy
import json
import logging
import os

from .allocator import Allocator
from .handler import RequestHandler
from .ledger import LeaseLedger
from .models import Pool
from .store import PoolStore

logger = logging.getLogger(__name__)

# Config lives in the repo root (one level up from this file's folder) unless IPAM_CONFIG says otherwise
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
REPO_ROOT = os.path.dirname(SCRIPT_DIR)
CONFIG_PATH = os.path.join(REPO_ROOT, "ipam_config.json")

DEFAULT_CONFIG = {
    "stateDir": "/var/lib/cni/ipam",
    "cniVersion": "1.0.0",
    "pools": [],
}


def load_config(path=None):
    """Load the JSON config, merged over DEFAULT_CONFIG.

    IPAM_CONFIG selects the file and IPAM_STATE_DIR overrides ``stateDir``.
    """
    path = path or os.getenv("IPAM_CONFIG", CONFIG_PATH)
    config = copy.deepcopy(DEFAULT_CONFIG)
    if os.path.exists(path):
        logger.info(f"Loading config from {path}")
        with open(path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Config {path} must be a JSON object")
        # Single-pool CNI style config: {"name": ..., "subnet": ..., "gateway": ...}
        if "subnet" in data and "pools" not in data:
            data["pools"] = [{
                "name": data.get("name", "default"),
                "cidr": data.pop("subnet"),
                "gateway": data.pop("gateway", None),
                "exclusions": data.pop("exclusions", []),
                "rangeStart": data.pop("rangeStart", None),
                "rangeEnd": data.pop("rangeEnd", None),
            }]
        config.update(data)
    else:
        logger.warning(f"No config at {path}, using defaults")

    state_dir = os.getenv("IPAM_STATE_DIR")
    if state_dir:
        config["stateDir"] = state_dir
    return config


def parse_pools(config):
    pools = []
    for entry in config.get("pools", []):
        try:
            pools.append(Pool.from_dict(entry))
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid pool {entry.get('name')!r}: {e}") from e
    return pools


def apply_config(store, config):
    """Define every configured pool in the store."""
    pools = parse_pools(config)
    for pool in pools:
        store.define_pool(pool)
    return [p.name for p in pools]


def build_handler(config=None):
    """Wire store, ledger, allocator and handler from config."""
    config = config or load_config()
    store = PoolStore(config["stateDir"])
    apply_config(store, config)
    allocator = Allocator(store, LeaseLedger(store))
    return RequestHandler(allocator)
