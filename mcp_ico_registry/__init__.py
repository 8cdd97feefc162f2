"""
ICO Registry Package Initialization

This package provides an Initial Coin Offering (ICO) registry running on a simulated,
Solana-flavoured chain and exposed through the Model Context Protocol (MCP). Project
owners list ICO projects for a fee, close them, or mint one fixed-supply, fixed-price
token sale per project; buyers purchase tokens by attaching the exact payment.

The package includes:
- The ProjectRegistry and TokenSale contracts
- A transactional chain simulator with native balances, events and receipts
- JSON persistence of the chain state
- Rate limiting and custom error handling
- MCP server and Flask action API implementations
"""
