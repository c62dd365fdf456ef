#!/usr/bin/env python3
# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
CLI tool for managing configuration stacks

Usage:
    python -m confstack.cli.stack_manager --help
    python -m confstack.cli.stack_manager init-db
    python -m confstack.cli.stack_manager submit -f stack.yaml
    python -m confstack.cli.stack_manager status --namespace default --name web
    python -m confstack.cli.stack_manager reconcile --namespace default --name web
    python -m confstack.cli.stack_manager children --namespace default --name web
    python -m confstack.cli.stack_manager delete --namespace default --name web
    python -m confstack.cli.stack_manager resync
    python -m confstack.cli.stack_manager run
"""

import argparse
import json
import logging
import sys
import threading

import yaml

from confstack.config import settings, setup_logging
from confstack.controller.reconciler import Reconciler, ReconcilerConfig
from confstack.db.store import StoreClient
from confstack.exceptions import NotFoundError
from confstack.resource.conditions import get_conditions
from confstack.resource.types import GroupVersionKind, NamespacedName, Object
from confstack.tasks.reconcile_tasks import result_to_dict
from confstack.tasks.scheduler import LocalReconcileScheduler, create_reconcile_scheduler

logger = logging.getLogger(__name__)


def get_store() -> StoreClient:
    from confstack.db.sql_store import SQLStoreClient

    return SQLStoreClient()


def build_reconciler(store: StoreClient) -> Reconciler:
    return Reconciler(
        store,
        GroupVersionKind.from_api_version(settings.parent_api_version, settings.parent_kind),
        ReconcilerConfig.from_settings(settings),
    )


def print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def init_database():
    from confstack.config import init_db

    init_db()
    print("Database tables created")


def submit_stacks(store: StoreClient, path: str):
    """Create parent resources from a manifest file, or merge-patch them when they exist"""
    with open(path, "r", encoding="utf-8") as f:
        documents = [d for d in yaml.safe_load_all(f) if d is not None]

    for document in documents:
        obj = Object.from_dict(document)
        if not obj.namespace:
            obj.metadata.namespace = "default"
        try:
            existing = store.get(obj.kind, obj.namespace, obj.name)
        except NotFoundError:
            store.create(obj)
            print(f"{obj} created")
            continue
        obj.metadata.resource_version = existing.metadata.resource_version
        store.patch(obj, merge_base=existing)
        print(f"{obj} configured")


def show_status(store: StoreClient, key: NamespacedName):
    parent = store.get(settings.parent_kind, key.namespace, key.name)
    print_json(
        {
            "object": parent.to_dict(),
            "conditions": [c.to_dict() for c in get_conditions(parent)],
        }
    )


def list_children(store: StoreClient, key: NamespacedName, kinds):
    parent = store.get(settings.parent_kind, key.namespace, key.name)
    children = []
    for kind in kinds:
        for obj in store.list(kind, namespace=key.namespace):
            if any(ref.uid == parent.metadata.uid for ref in obj.metadata.owner_references):
                children.append({"kind": obj.kind, "name": obj.name, "resourceVersion": obj.metadata.resource_version})
    if not children:
        print(f"No child resources found for {parent}")
        return
    print_json(children)


def run_reconciliation(store: StoreClient, key: NamespacedName):
    """Run a single reconcile pass"""
    logger.info(f"Starting manual reconciliation of {key}...")
    result = build_reconciler(store).reconcile(key)
    print_json(result_to_dict(result))
    return result


def delete_stack(store: StoreClient, key: NamespacedName):
    parent = store.mark_deleted(settings.parent_kind, key.namespace, key.name)
    print(f"Deletion requested for {parent} at {parent.metadata.deletion_timestamp}")


def resync_stacks(store: StoreClient):
    """Enqueue every configuration stack on the configured scheduler"""
    reconciler = build_reconciler(store)
    scheduler = create_reconcile_scheduler(settings.scheduler_type, reconciler)
    parents = store.list(settings.parent_kind)
    for parent in parents:
        scheduler.enqueue(parent.key)
    if isinstance(scheduler, LocalReconcileScheduler):
        scheduler.run_pending()
    print(f"Enqueued {len(parents)} configuration stacks")


def run_controller(store: StoreClient):
    """Run the local control loop until interrupted"""
    reconciler = build_reconciler(store)
    scheduler = LocalReconcileScheduler(reconciler)
    scheduler.watch(store, settings.parent_kind)
    for parent in store.list(settings.parent_kind):
        scheduler.enqueue(parent.key)

    stop_event = threading.Event()
    try:
        scheduler.run_forever(stop_event)
    except KeyboardInterrupt:
        stop_event.set()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Configuration Stack Manager CLI")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('init-db', help='Create database tables')

    submit_parser = subparsers.add_parser('submit', help='Create or update configuration stacks from a file')
    submit_parser.add_argument('-f', '--file', required=True, help='YAML manifest file')

    for command, help_text in [
        ('status', 'Show a configuration stack and its conditions'),
        ('reconcile', 'Run reconciliation manually'),
        ('delete', 'Request deletion of a configuration stack'),
        ('children', 'List stored child resources of a configuration stack'),
    ]:
        command_parser = subparsers.add_parser(command, help=help_text)
        command_parser.add_argument('--namespace', default='default', help='Namespace')
        command_parser.add_argument('--name', required=True, help='Name')
        if command == 'children':
            command_parser.add_argument('--kinds', nargs='+', required=True, help='Child kinds to search')

    subparsers.add_parser('resync', help='Enqueue every configuration stack')
    subparsers.add_parser('run', help='Run the local control loop')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    if args.command == 'init-db':
        init_database()
        return 0

    store = get_store()
    try:
        if args.command == 'submit':
            submit_stacks(store, args.file)
        elif args.command == 'resync':
            resync_stacks(store)
        elif args.command == 'run':
            run_controller(store)
        else:
            key = NamespacedName(namespace=args.namespace, name=args.name)
            if args.command == 'status':
                show_status(store, key)
            elif args.command == 'reconcile':
                result = run_reconciliation(store, key)
                return 0 if result.success else 1
            elif args.command == 'delete':
                delete_stack(store, key)
            elif args.command == 'children':
                list_children(store, key, args.kinds)
    except NotFoundError as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
