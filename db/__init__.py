"""
Database lifecycle for the tasks service.

Resolves the environment's configuration and runs the `db` commands against it:
- create / drop the database
- apply versioned SQL migrations from `db/migrations`
- reset (drop, create, migrate)
- run the `db/seeds.sql` seed script
"""
