"""
Licensing: entitlement state of the deployed instance and, on the platform,
the authority that answers validation requests.
"""
