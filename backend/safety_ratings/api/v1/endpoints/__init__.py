# Endpoint modules
