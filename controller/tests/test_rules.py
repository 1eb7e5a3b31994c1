from __future__ import annotations

from pathlib import Path

import pytest

from controller.src.rules import (
    BackendRef,
    RuleDocumentError,
    load_rule_document,
    parse_rule_document,
)

RULES_YAML = """\
- load_balancer_id: lb-abc123
  listeners:
    - port: 443
      protocol: https
      rules:
        - domain: api.example.com
          url: /
          backend:
            namespace: shop
            deployment: api
            port: 8080
        - domain: api.example.com
          url: /static
          backend:
            namespace: shop
            deployment: static
            port: 80
- load_balancer_id: lb-def456
  listeners:
    - port: 80
      protocol: HTTP
      rules:
        - domain: www.example.com
          url: /
          backend:
            namespace: shop
            deployment: web
            port: 3000
"""


def test_load_rule_document_preserves_order(tmp_path: Path) -> None:
    path = tmp_path / "rules.yaml"
    path.write_text(RULES_YAML, encoding="utf-8")

    document = load_rule_document(path)

    assert [lb.load_balancer_id for lb in document.load_balancers] == ["lb-abc123", "lb-def456"]
    listener = document.load_balancers[0].listeners[0]
    assert listener.port == 443
    assert listener.protocol == "https"
    assert [rule.url for rule in listener.rules] == ["/", "/static"]
    assert listener.rules[0].backend == BackendRef(namespace="shop", deployment="api", port=8080)


def test_backend_ref_deployment_key() -> None:
    assert BackendRef(namespace="shop", deployment="api", port=8080).deployment_key == "shop/api"


def test_empty_document_declares_nothing() -> None:
    assert parse_rule_document(None).load_balancers == ()


def test_empty_domain_and_url_are_allowed() -> None:
    document = parse_rule_document(
        [
            {
                "load_balancer_id": "lb-1",
                "listeners": [
                    {
                        "port": 80,
                        "protocol": "HTTP",
                        "rules": [
                            {"backend": {"namespace": "ns", "deployment": "app", "port": 8080}}
                        ],
                    }
                ],
            }
        ]
    )
    rule = document.load_balancers[0].listeners[0].rules[0]
    assert rule.domain == ""
    assert rule.url == ""


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(RuleDocumentError, match="failed to read"):
        load_rule_document(tmp_path / "missing.yaml")


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    path = tmp_path / "rules.yaml"
    path.write_text("- load_balancer_id: [unclosed\n", encoding="utf-8")

    with pytest.raises(RuleDocumentError, match="failed to parse"):
        load_rule_document(path)


def test_top_level_mapping_is_rejected() -> None:
    with pytest.raises(RuleDocumentError, match="rules document must be a list"):
        parse_rule_document({"load_balancer_id": "lb-1"})


def test_missing_load_balancer_id_is_rejected() -> None:
    with pytest.raises(RuleDocumentError, match="load_balancer_id must be a non-empty string"):
        parse_rule_document([{"listeners": []}])


@pytest.mark.parametrize("port", ["8080", True, 0, 70000, None])
def test_invalid_backend_port_is_rejected(port: object) -> None:
    payload = [
        {
            "load_balancer_id": "lb-1",
            "listeners": [
                {
                    "port": 80,
                    "protocol": "HTTP",
                    "rules": [
                        {
                            "domain": "a.example.com",
                            "url": "/",
                            "backend": {"namespace": "ns", "deployment": "app", "port": port},
                        }
                    ],
                }
            ],
        }
    ]
    with pytest.raises(RuleDocumentError, match=r"backend\.port"):
        parse_rule_document(payload)


def test_missing_backend_is_rejected() -> None:
    payload = [
        {
            "load_balancer_id": "lb-1",
            "listeners": [
                {"port": 80, "protocol": "HTTP", "rules": [{"domain": "a", "url": "/"}]}
            ],
        }
    ]
    with pytest.raises(RuleDocumentError, match="backend must be a mapping"):
        parse_rule_document(payload)


def test_undecodable_file_raises(tmp_path: Path) -> None:
    path = tmp_path / "rules.yaml"
    path.write_bytes(b"- load_balancer_id: \xff\xfe\n")

    with pytest.raises(RuleDocumentError, match="failed to read"):
        load_rule_document(path)
