# Request-scoped FastAPI dependencies: operator identity and timer managers.
