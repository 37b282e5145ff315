"""
Pipeline services: store, importer, live client, resolver, batch worker and reports.
"""
