"""
Agent services module.

Provides the scheduling logic behind the agent.

Services:
- booking_capacity: Serializable per-therapist capacity control
- tool_loop: Bounded model/tool iteration for one turn
- tool_executor: Scheduling tool side effects (allow-list, idempotency, human control)
- scheduling_service: One agent turn per inbound event
"""
