"""
Clinic and patient reference data.

Clinic and patient CRUD lives outside this service; only the fields the
subscription and refill core reads or writes are modeled here.
"""
