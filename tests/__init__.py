import os

# Enable runtime type checking if requested via environment variable
if os.getenv("DISPERSAL_RUNTIME_TYPECHECKING", "").lower() in ("1", "true", "yes"):
    from beartype.claw import beartype_this_package

    beartype_this_package()
