from __future__ import annotations

# Demo arrival generator.
#
# Simulates patients arriving at the kiosk and issues tickets through the same
# request/response protocol as the `kiosk` command. Arrivals follow a Poisson
# process; each patient picks a service at random and gets a triage level
# from the default mix.

import argparse
import random
import time

from .arrival import sample_exponential_interarrival, sample_triage
from .client import DispatchClient, connect
from .config import Settings, add_mqtt_args
from .errors import QueueError


def run_generator(
    client: DispatchClient,
    *,
    rate_per_sec: float,
    service_ids: list[str] | None = None,
    max_tickets: int | None = None,
    seed: int | None = None,
    preferente_ratio: float = 0.1,
    sleep=time.sleep,
) -> int:
    """Issue tickets until `max_tickets` (or forever). Returns how many were issued."""
    rng = random.Random(seed)
    if not service_ids:
        service_ids = [s["id"] for s in client.services() if s.get("is_active")]
    if not service_ids:
        raise ValueError("no active services to issue tickets for")

    issued = 0
    while max_tickets is None or issued < max_tickets:
        dt = sample_exponential_interarrival(rate_per_sec=rate_per_sec, rng=rng)
        sleep(dt)

        service_id = rng.choice(service_ids)
        triage = sample_triage(rng=rng)
        try:
            ticket = client.create(
                service_id,
                triage=triage.value if triage else None,
                preferente=rng.random() < preferente_ratio,
                source="generator",
            )
        except QueueError as e:
            print(f"[generator] {service_id} -> error {e.code}: {e.message} (dt={dt:0.2f}s)")
            if not e.retryable:
                raise
            continue

        issued += 1
        print(
            f"[generator] {ticket['code']} service={service_id} "
            f"triage={ticket['triage'] or '-'} (dt={dt:0.2f}s)"
        )
    return issued


def main(argv: list[str] | None = None) -> None:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Patient arrival generator (Poisson arrivals over MQTT)")
    add_mqtt_args(parser, settings)
    parser.add_argument(
        "--rate",
        type=float,
        required=True,
        help="arrival rate λ in patients/second (Poisson process)",
    )
    parser.add_argument("--service", action="append", dest="services", help="restrict to these services")
    parser.add_argument("--max-tickets", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--preferente-ratio", type=float, default=0.1)
    args = parser.parse_args(argv)

    client = connect(
        role="generator",
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        timeout=args.timeout,
    )
    print(f"[generator] connected to MQTT {args.mqtt_host}:{args.mqtt_port}, namespace={args.namespace}")
    try:
        n = run_generator(
            client,
            rate_per_sec=args.rate,
            service_ids=args.services,
            max_tickets=args.max_tickets,
            seed=args.seed,
            preferente_ratio=args.preferente_ratio,
        )
        print(f"[generator] issued {n} tickets, stopping")
    except KeyboardInterrupt:
        pass
    finally:
        client.transport.stop()


if __name__ == "__main__":
    main()
