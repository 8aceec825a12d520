"""Fleet Capacity Controller (FCC).

Keeps a pool of stateless worker instances sized within bounds:
 - capacity reconciliation (scale out / scale in / replace)
 - health checking with threshold hysteresis
 - routing to healthy members through ordered rules
 - a lease-based distributed lock and an append-only encrypted state store
   guarding changes to the desired capacity
"""
