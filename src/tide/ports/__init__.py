from tide.ports.oracles import (
    BalanceOraclePort,
    MarketStatus,
    MarketStatusPort,
    SwapGatewayPort,
    SwapQuote,
)

__all__ = ["BalanceOraclePort", "MarketStatus", "MarketStatusPort", "SwapGatewayPort", "SwapQuote"]
