"""Dispatch protocol for the durable task queue.

Three mechanisms cooperate:

- the store's insert trigger publishes each new task id on a notification
  channel, giving subscribed dispatchers a low-latency wake-up;
- every dispatcher periodically runs a reconciliation pass that drains all
  claimable pending tasks straight from the table, so a dropped notification
  only costs latency;
- claims use ``SELECT ... FOR UPDATE SKIP LOCKED`` so any number of
  dispatcher processes can share one table without double-processing.

Notifications carry no delivery guarantee; correctness rests on the
reconciliation pass and the row claim.
"""
