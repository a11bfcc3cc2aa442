"""
Services Layer

Scheduling and drawing logic, independent of HTTP:
- template_structure / structure_resolver: parse and size a template for N units (pure)
- schedule_generator: persist phases, slots, advancement rules and encounters
- bye_resolver: byes, voids and advancement through rules
- drawing_orchestrator / drawing_broadcast: the drawing ceremony and its live room
- match_format_resolver: effective game settings per phase and match format

Services raise app.services.errors.SchedulingError subclasses; routes map them to HTTP.
"""
