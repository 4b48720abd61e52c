import argparse

from clinic_queue.config import DEFAULT_NAMESPACE, Settings, add_mqtt_args


def test_defaults():
    s = Settings.from_env({})
    assert s.namespace == DEFAULT_NAMESPACE
    assert s.mqtt_port == 1883
    assert s.display_now_serving == 4
    assert s.display_next == 8
    assert s.seed_demo is True


def test_env_overrides_are_coerced():
    s = Settings.from_env(
        {
            "CLINIC_QUEUE_MQTT_PORT": "2883",
            "CLINIC_QUEUE_LOCK_TIMEOUT": "0.5",
            "CLINIC_QUEUE_SEED_DEMO": "no",
            "CLINIC_QUEUE_OPERATOR_TOKEN": "abc",
            "CLINIC_QUEUE_REQUEST_WORKERS": "3",
            "UNRELATED": "x",
        }
    )
    assert s.mqtt_port == 2883
    assert s.lock_timeout == 0.5
    assert s.seed_demo is False
    assert s.operator_token == "abc"
    assert s.request_workers == 3


def test_mqtt_args_use_settings_as_defaults():
    p = argparse.ArgumentParser()
    add_mqtt_args(p, Settings(mqtt_host="broker", namespace="x/v1", request_timeout=3.0))

    args = p.parse_args([])
    assert (args.mqtt_host, args.mqtt_port, args.namespace, args.timeout) == ("broker", 1883, "x/v1", 3.0)

    args = p.parse_args(["--mqtt-port", "1999"])
    assert args.mqtt_port == 1999
