"""Progressive Delivery Controller (PDC).

Moves live traffic between the stable and candidate pools of a workload:
 - blue-green: the candidate is brought up at full capacity and traffic is
   flipped in a single selector update
 - canary: replicas and routing weights are shifted gradually while the
   total capacity stays constant

Every step is gated on pool readiness and every transition is recorded, so a
rollout can be rolled back (or resumed after a restart) at any point.
"""
