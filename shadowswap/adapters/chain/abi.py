from __future__ import annotations


POOL_KEY_COMPONENTS = [
    {"name": "currency0", "type": "address"},
    {"name": "currency1", "type": "address"},
    {"name": "fee", "type": "uint24"},
    {"name": "tickSpacing", "type": "int24"},
    {"name": "hooks", "type": "address"},
]

ROUTER_ABI = [
    {
        "name": "executeMatch",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "poolKey", "type": "tuple", "components": POOL_KEY_COMPONENTS},
            {"name": "zeroForOne", "type": "bool"},
            {"name": "amountIn", "type": "uint256"},
        ],
        "outputs": [{"name": "amountOut", "type": "uint256"}],
    },
    {
        "name": "solver",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "MatchExecuted",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "tokenIn", "type": "address", "indexed": True},
            {"name": "tokenOut", "type": "address", "indexed": True},
            {"name": "amountIn", "type": "uint256", "indexed": False},
            {"name": "amountOut", "type": "uint256", "indexed": False},
        ],
    },
]

REGISTRY_ABI = [
    {
        "name": "setText",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "node", "type": "bytes32"},
            {"name": "key", "type": "string"},
            {"name": "value", "type": "string"},
        ],
        "outputs": [],
    },
]
