"""
demo_seed - Salesforce demo data injection engine

This package takes locally generated CRM records, resolves the relationships
between them and creates them in a Salesforce org in dependency order. The
same object graph is walked in reverse for cleanup and replayed for snapshot
restore.

Python Modules:
    - models: Records, configuration, results and snapshots
    - dependency_graph: Injection/cleanup order of object types
    - schema_cache: Describe metadata cache with TTL
    - validator: Pre-flight validation of records
    - mapper: Relationship resolution and field transforms
    - id_table: Local id -> Salesforce id translation table
    - rest_api / bulk_api: Row (composite) and Bulk API 2.0 clients
    - transport: Row vs bulk path selection
    - injector: Injection orchestration
    - cleanup: Reverse-order deletion and verification
    - snapshots: Snapshot capture, restore and golden images
    - cli: Command line entry point

Usage:
    demo-seed inject --records dataset.json --config injection_config.json
    demo-seed cleanup --ids injected_ids.json
    demo-seed snapshot capture --name baseline
"""

__version__ = "1.0.0"
