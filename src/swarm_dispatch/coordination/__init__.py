"""Job lifecycle, provider health and assignment coordination.

The coordinator performs no background work of its own. A scheduler loop
(``dispatcher.DispatchLoop``) or any other caller drives it, and every job
status change goes through ``state_machine.try_transition``.
"""
