"""
Economy Module
==============
Prepaid compute balance of the router:
- ComputeLedgerContract / ServingContract: web3 chain adapters
- BalanceLedgerClient: ensure-funds logic with degradation
- RouterStore: aiosqlite balance snapshots and attempt journal
"""
