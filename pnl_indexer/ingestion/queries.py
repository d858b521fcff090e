"""GraphQL documents for the DEX trade history service (Bitquery V2)."""

TRADE_FIELDS = """
      Block {
        Time
        Number
      }
      Transaction {
        Hash
        From
        To
      }
      Trade {
        Buy {
          Amount
          AmountInUSD
          PriceInUSD
          Currency {
            Symbol
            SmartContract
            Decimals
          }
          Buyer
        }
        Sell {
          Amount
          AmountInUSD
          PriceInUSD
          Currency {
            Symbol
            SmartContract
            Decimals
          }
          Seller
        }
        Dex {
          ProtocolName
          ProtocolFamily
          SmartContract
        }
      }
"""

TRADES_PAGE_QUERY = """
query TokenTrades($token: String!, $since: DateTime!, $till: DateTime!, $limit: Int!) {
  EVM(dataset: combined, network: %(network)s) {
    DEXTrades(
      where: {
        any: [
          {Trade: {Buy: {Currency: {SmartContract: {is: $token}}}}}
          {Trade: {Sell: {Currency: {SmartContract: {is: $token}}}}}
        ]
        Block: {Time: {since: $since, till: $till}}
      }
      orderBy: {ascending: Block_Time}
      limit: {count: $limit}
    ) {%(fields)s    }
  }
}
"""

FIRST_TRADE_QUERY = """
query TokenInception($token: String!) {
  EVM(dataset: combined, network: %(network)s) {
    DEXTrades(
      where: {
        any: [
          {Trade: {Buy: {Currency: {SmartContract: {is: $token}}}}}
          {Trade: {Sell: {Currency: {SmartContract: {is: $token}}}}}
        ]
      }
      limit: {count: 1}
      orderBy: {ascending: Block_Number}
    ) {
      Block {
        Number
        Time
      }
    }
  }
}
"""

FIRST_TRANSFER_QUERY = """
query TokenFirstTransfer($token: String!) {
  EVM(network: %(network)s) {
    Transfers(
      where: {Transfer: {Currency: {SmartContract: {is: $token}}}}
      limit: {count: 1}
      orderBy: {ascending: Block_Number}
    ) {
      Block {
        Number
        Time
      }
    }
  }
}
"""


def render(template: str, network: str) -> str:
    return template % {"network": network, "fields": TRADE_FIELDS}
