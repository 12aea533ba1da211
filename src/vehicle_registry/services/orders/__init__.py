"""
Registration order lifecycle: statuses, transition rules, persistence and
the service that ties them together.
"""
