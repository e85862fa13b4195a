"""
dbstarter bootstraps and supervises a distributed database deployment
(agency, dbservers and coordinators) across cooperating peers.
"""
