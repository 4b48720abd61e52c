import pytest

from clinic_queue.errors import UnknownCounter, UnknownService
from clinic_queue.models import Counter, Service
from clinic_queue.registry import CounterRegistry, ServiceRegistry


@pytest.fixture
def services():
    return ServiceRegistry([Service(id="admision", name="Admisión", prefix="A")])


def test_service_prefix_must_be_one_uppercase_letter():
    with pytest.raises(ValueError):
        Service(id="lab", name="Laboratorio", prefix="LB")
    with pytest.raises(ValueError):
        Service(id="lab", name="Laboratorio", prefix="l")


def test_duplicate_ids_and_prefixes_rejected(services):
    with pytest.raises(ValueError):
        services.add(Service(id="admision", name="Otra", prefix="B"))
    with pytest.raises(ValueError):
        services.add(Service(id="alergias", name="Alergias", prefix="A"))


def test_service_activation_and_rename(services):
    services.set_active("admision", False)
    with pytest.raises(UnknownService):
        services.require_active("admision")
    assert services.list(active_only=True) == []
    assert [s.id for s in services.list()] == ["admision"]

    services.rename("admision", "Admisión Central")
    assert services.get("admision").name == "Admisión Central"
    with pytest.raises(UnknownService):
        services.rename("radiologia", "Rayos")


def test_counters_bind_to_existing_services(services):
    counters = CounterRegistry(services)
    counters.add(Counter(id="adm-1", name="Ventanilla 1", service_id="admision"))
    with pytest.raises(UnknownService):
        counters.add(Counter(id="rx-1", name="Rayos 1", service_id="radiologia"))
    with pytest.raises(ValueError):
        counters.add(Counter(id="adm-1", name="Duplicada", service_id="admision"))

    assert [c.id for c in counters.for_service("admision")] == ["adm-1"]
    counters.set_active("adm-1", False)
    with pytest.raises(UnknownCounter):
        counters.require_active("adm-1")
    with pytest.raises(UnknownCounter):
        counters.get("adm-9")

    counters.rename("adm-1", "Mostrador")
    assert counters.get("adm-1").name == "Mostrador"
    with pytest.raises(UnknownCounter):
        counters.rename("adm-9", "Nada")
