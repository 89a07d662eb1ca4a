"""Build orchestration module.

This module handles:
- Composing build engine arguments for each kind of target
- Running the engine, retrying known transient failures
- Tracking, promoting, and cleaning build outputs
- Running a build end to end

Access submodules directly, e.g. buildsys.builds.service.
"""
