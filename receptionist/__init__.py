"""Real-time call turn orchestration for multi-tenant phone receptionists.

One caller utterance goes in, one reply (and action) comes out.  The
per-turn pipeline lives in ``receptionist.pipeline``; persistence seams in
``receptionist.session`` and ``receptionist.booking``.
"""

__version__ = "0.1.0"
