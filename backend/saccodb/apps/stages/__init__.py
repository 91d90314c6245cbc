"""
Stages app

Responsible for:
- The append-only arrival/departure log per stage
- Presence and queue derivation from that log
- Time-windowed capacity rules and admission control
- Marshal shift assignments
"""
