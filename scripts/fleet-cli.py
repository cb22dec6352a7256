#!/usr/bin/env python3
"""
fleet — CLI for the showfleet VM pool.

Usage:
    fleet pool
    fleet vm <vm-id>
    fleet assign <competition-id> [--vm <vm-id>]
    fleet release <competition-id>
    fleet start <vm-id>
    fleet stop <vm-id> [--force]
    fleet maintain
    fleet health [<vm-id>] [--check]
"""

from __future__ import annotations

import argparse
import os
import sys

import httpx

API_BASE = "http://localhost:8000"

STATUS_COLORS = {
    "available": "32",
    "assigned": "34",
    "in_use": "35",
    "starting": "33",
    "stopping": "33",
    "stopped": "90",
    "error": "31",
}


def _headers() -> dict[str, str]:
    # The admin key opens every route; FLEET_API_KEY alone covers a single-key setup
    api_key = os.getenv("FLEET_ADMIN_API_KEY") or os.getenv("FLEET_API_KEY", "")
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


def _request(method: str, path: str, **kwargs) -> httpx.Response:
    return httpx.request(method, f"{API_BASE}{path}", headers=_headers(), timeout=30, **kwargs)


def _fail(resp: httpx.Response):
    try:
        detail = resp.json().get("detail", resp.text)
    except ValueError:
        detail = resp.text
    print(f"\033[31m✗ Error ({resp.status_code}): {detail}\033[0m")
    retry_after = resp.headers.get("Retry-After")
    if retry_after:
        print(f"  Retry after {retry_after}s")
    sys.exit(1)


def _status(status: str) -> str:
    return f"\033[{STATUS_COLORS.get(status, '0')}m{status:<10}\033[0m"


def show_pool(args):
    """Show pool counts and every VM."""
    resp = _request("GET", "/api/admin/vm-pool")
    if resp.status_code != 200:
        _fail(resp)

    pool = resp.json()
    counts = pool["counts"]
    config = pool["config"]
    print("\n\033[1mVM Pool\033[0m")
    print(f"  Warm target:  {config['warm_count']}   Max: {config['max_instances']}")
    print(
        f"  Available: \033[32m{counts['available']}\033[0m  "
        f"Assigned: \033[34m{counts['assigned']}\033[0m  "
        f"In use: \033[35m{counts['in_use']}\033[0m  "
        f"Stopped: {counts['stopped']}  "
        f"Starting: \033[33m{counts['starting']}\033[0m  "
        f"Error: \033[31m{counts['error']}\033[0m"
    )

    if not pool["vms"]:
        print("\n  No VMs in pool.")
        return

    print(f"\n{'VM':<14} {'Status':<10} {'Public IP':<16} {'Competition'}")
    print("─" * 60)
    for vm in pool["vms"]:
        print(
            f"{vm['vm_id']:<14} {_status(vm['status'])} "
            f"{vm.get('public_ip') or '—':<16} {vm.get('assigned_to') or '—'}"
        )


def show_vm(args):
    resp = _request("GET", f"/api/admin/vm-pool/{args.vm_id}")
    if resp.status_code != 200:
        _fail(resp)
    vm = resp.json()
    print(f"{_status(vm['status'])} {vm['name']}")
    print(f"  VM:          {vm['vm_id']}")
    print(f"  Instance:    {vm['instance_id']}")
    print(f"  Public IP:   {vm.get('public_ip') or '—'}")
    print(f"  Competition: {vm.get('assigned_to') or '—'}")
    services = vm.get("services") or {}
    if services:
        print(f"  Reachable:   {services.get('reachable')}")
        print(f"  Control:     {services.get('control_plane_connected')}")
    if vm.get("error_reason"):
        print(f"  Error:       {vm['error_reason']}")


def assign(args):
    payload = {"preferred_vm_id": args.vm} if args.vm else {}
    resp = _request("POST", f"/api/competitions/{args.competition_id}/vm/assign", json=payload)
    if resp.status_code != 200:
        _fail(resp)
    data = resp.json()
    print("\033[32m✓ VM assigned\033[0m")
    print(f"  VM:      {data['vm_id']}")
    print(f"  Address: {data.get('vm_address') or '—'}")


def release(args):
    resp = _request("POST", f"/api/competitions/{args.competition_id}/vm/release")
    if resp.status_code != 200:
        _fail(resp)
    data = resp.json()
    if data.get("vm_id"):
        print(f"\033[32m✓ Released {data['vm_id']}\033[0m")
    else:
        print(data.get("message") or "Nothing to release.")


def start(args):
    resp = _request("POST", f"/api/admin/vm-pool/{args.vm_id}/start")
    if resp.status_code != 202:
        _fail(resp)
    print(f"\033[33m● {resp.json()['message']}\033[0m")


def stop(args):
    resp = _request("POST", f"/api/admin/vm-pool/{args.vm_id}/stop", json={"force": args.force})
    if resp.status_code != 202:
        _fail(resp)
    print(f"\033[33m● {resp.json()['message']}\033[0m")


def maintain(args):
    resp = _request("POST", "/api/admin/vm-pool/maintain")
    if resp.status_code != 200:
        _fail(resp)
    report = resp.json()
    print(
        f"Warm VMs: {report['warm_vms_before']}/{report['warm_vms_target']}, "
        f"started {report['started_count']}"
    )
    for result in report["results"]:
        mark = "\033[32m✓\033[0m" if result["success"] else "\033[31m✗\033[0m"
        print(f"  {mark} {result['vm_id']} {result.get('error') or ''}")


def health(args):
    if args.vm_id:
        resp = _request("POST", f"/api/admin/vm-pool/{args.vm_id}/health/check")
        if resp.status_code != 200:
            _fail(resp)
        result = resp.json()
        mark = "\033[32m● healthy\033[0m" if result["healthy"] else "\033[31m● unhealthy\033[0m"
        print(f"{mark}  {result['vm_id']}  {result.get('error') or ''}")
        return

    if args.check:
        resp = _request("POST", "/api/admin/vm-pool/health/check")
        if resp.status_code != 200:
            _fail(resp)
        summary = resp.json()
        print(f"Checked {summary['total']}: {summary['healthy']} healthy, {summary['unhealthy']} unhealthy")

    resp = _request("GET", "/api/admin/vm-pool/health")
    if resp.status_code != 200:
        _fail(resp)
    status = resp.json()
    print(f"\n{'VM':<14} {'Status':<10} {'Fails':>5} {'OKs':>5}  {'Last check'}")
    print("─" * 60)
    for vm in status["vms"]:
        print(
            f"{vm['vm_id']:<14} {_status(vm['status'])} {vm['failure_count']:>5} "
            f"{vm['success_count']:>5}  {vm.get('last_health_check') or '—'}"
        )


def main():
    global API_BASE
    parser = argparse.ArgumentParser(
        prog="fleet",
        description="showfleet CLI — inspect and operate the VM pool",
    )
    parser.add_argument("--api", default=API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("pool", aliases=["ls"], help="Show pool status")

    vm_parser = subparsers.add_parser("vm", help="Show one VM")
    vm_parser.add_argument("vm_id")

    assign_parser = subparsers.add_parser("assign", help="Assign a VM to a competition")
    assign_parser.add_argument("competition_id")
    assign_parser.add_argument("--vm", help="Preferred VM id")

    release_parser = subparsers.add_parser("release", help="Release a competition's VM")
    release_parser.add_argument("competition_id")

    start_parser = subparsers.add_parser("start", help="Start a stopped VM")
    start_parser.add_argument("vm_id")

    stop_parser = subparsers.add_parser("stop", help="Stop an unassigned VM")
    stop_parser.add_argument("vm_id")
    stop_parser.add_argument("--force", action="store_true")

    subparsers.add_parser("maintain", help="Top up the warm pool")

    health_parser = subparsers.add_parser("health", help="Show or run health checks")
    health_parser.add_argument("vm_id", nargs="?", help="Probe this VM now")
    health_parser.add_argument("--check", action="store_true", help="Probe every VM first")

    args = parser.parse_args()

    API_BASE = args.api

    handlers = {
        "pool": show_pool,
        "ls": show_pool,
        "vm": show_vm,
        "assign": assign,
        "release": release,
        "start": start,
        "stop": stop,
        "maintain": maintain,
        "health": health,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return
    handler(args)


if __name__ == "__main__":
    main()
