"""Consortium Circulation - core engine package

This package contains the circulation and inventory coordination engine:
- Circulation state machine (circulation.py)
- Fine policy ledger (fines.py)
- Reservation priority queue (reservations.py)
- Inventory rebalancer (rebalancer.py)
- Shipment tracker (shipments.py)
- Database layer (database.py)
"""
