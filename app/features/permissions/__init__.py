"""
Project permission feature module.

Decides whether a principal may perform an operation inside a project, based
on the role the principal holds there. Decisions fail closed and every denial
is audited.
"""
