import base64
import importlib
import json
from typing import Any, Dict

import pytest
from flask import Flask

CONFIG = {
	"pod": {
		"prod": {"labels": {"team": "x"}},
		"annotated": {"annotations": {"owner": "platform"}},
		"kube-system": {"labels": {"team": "x"}},
	},
	"service": {"prod": {"annotations": {"cost-center": "42"}, "labels": {"tier": "web"}}},
	"persistentVolumeClaim": {"data": {"labels": {"backup": "daily"}}},
}


def import_app(monkeypatch: pytest.MonkeyPatch) -> Any:
	# Prevent real in-cluster config
	monkeypatch.setenv("APP_ENV", "test")
	monkeypatch.setenv("LOG_LEVEL", "WARNING")
	return importlib.import_module("k8s_metadata_injector.app")


def make_client(config: Dict[str, Any] = CONFIG):
	conf = importlib.import_module("k8s_metadata_injector.config")
	models = importlib.import_module("k8s_metadata_injector.models")
	mutation = importlib.import_module("k8s_metadata_injector.mutation")
	routes = importlib.import_module("k8s_metadata_injector.routes")

	settings = conf.Settings(app_env="test")
	mutator = mutation.AdmissionMutator(
		models.MetadataConfig.from_dict(config), models.ObjectDecoder(), settings
	)
	app = Flask(__name__)
	app.register_blueprint(routes.create_routes(settings, mutator))
	return app.test_client()


def admission_review(uid: str, obj: Any, kind: str = "Pod", namespace: str = "prod") -> Dict[str, Any]:
	return {
		"apiVersion": "admission.k8s.io/v1",
		"kind": "AdmissionReview",
		"request": {
			"uid": uid,
			"kind": {"group": "", "version": "v1", "kind": kind},
			"namespace": namespace,
			"operation": "CREATE",
			"object": obj,
		},
	}


def minimal_obj(name="p1", ns="prod", labels=None, annotations=None) -> Dict[str, Any]:
	meta: Dict[str, Any] = {"name": name, "namespace": ns}
	if labels is not None:
		meta["labels"] = labels
	if annotations is not None:
		meta["annotations"] = annotations
	return {"metadata": meta}


def decode_patch(resp_json: Dict[str, Any]):
	patch_b64 = resp_json["response"].get("patch")
	if not patch_b64:
		return None
	raw = base64.b64decode(patch_b64).decode()
	return json.loads(raw)


def patch_ops(patch):
	return {op["path"]: op for op in patch}


def test_pod_in_configured_namespace_gets_labels_and_status():
	client = make_client()
	r = client.post("/mutate", json=admission_review("u1", minimal_obj()))
	assert r.status_code == 200
	body = r.get_json()
	assert body["response"]["allowed"] is True
	assert body["response"]["uid"] == "u1"
	assert body["response"]["patchType"] == "JSONPatch"

	ops = patch_ops(decode_patch(body))
	assert ops["/metadata/labels"]["op"] == "add"
	assert ops["/metadata/labels"]["value"] == {"team": "x"}
	assert ops["/metadata/annotations"]["op"] == "add"
	assert ops["/metadata/annotations"]["value"] == {
		"k8s-metadata-injector.kubernetes.io/status": "injected"
	}


def test_annotations_op_comes_first():
	client = make_client()
	body = client.post("/mutate", json=admission_review("u1", minimal_obj())).get_json()
	patch = decode_patch(body)
	assert [op["path"] for op in patch] == ["/metadata/annotations", "/metadata/labels"]


@pytest.mark.parametrize("value", ["true", "TRUE", "y", "Yes", "on"])
def test_skip_annotation_opts_out(value):
	client = make_client()
	obj = minimal_obj(annotations={"k8s-metadata-injector.kubernetes.io/skip": value})
	body = client.post("/mutate", json=admission_review("u2", obj)).get_json()
	assert body["response"]["allowed"] is True
	assert "patch" not in body["response"]


def test_skip_annotation_other_value_still_mutates():
	client = make_client()
	obj = minimal_obj(annotations={"k8s-metadata-injector.kubernetes.io/skip": "false"})
	body = client.post("/mutate", json=admission_review("u3", obj)).get_json()
	ops = patch_ops(decode_patch(body))
	assert ops["/metadata/annotations"]["value"] == {
		"k8s-metadata-injector.kubernetes.io/skip": "false",
		"k8s-metadata-injector.kubernetes.io/status": "injected",
	}


def test_existing_keys_win_over_configured_and_injected():
	client = make_client()
	obj = minimal_obj(
		labels={"team": "mine", "app": "web"},
		annotations={"k8s-metadata-injector.kubernetes.io/status": "custom"},
	)
	body = client.post("/mutate", json=admission_review("u4", obj)).get_json()
	ops = patch_ops(decode_patch(body))
	assert ops["/metadata/labels"]["value"] == {"team": "mine", "app": "web"}
	assert ops["/metadata/annotations"]["value"] == {
		"k8s-metadata-injector.kubernetes.io/status": "custom"
	}


def test_configured_annotations_without_labels_only_patch_annotations():
	client = make_client()
	obj = minimal_obj(ns="annotated")
	body = client.post("/mutate", json=admission_review("u5", obj, namespace="annotated")).get_json()
	patch = decode_patch(body)
	assert len(patch) == 1
	assert patch[0]["path"] == "/metadata/annotations"
	assert patch[0]["value"] == {
		"k8s-metadata-injector.kubernetes.io/status": "injected",
		"owner": "platform",
	}


def test_unconfigured_namespace_allows_without_patch():
	client = make_client()
	obj = minimal_obj(ns="staging")
	body = client.post("/mutate", json=admission_review("u6", obj, namespace="staging")).get_json()
	assert body["response"]["allowed"] is True
	assert "patch" not in body["response"]


def test_system_namespace_is_never_mutated():
	client = make_client()
	obj = minimal_obj(ns="kube-system")
	body = client.post("/mutate", json=admission_review("u7", obj, namespace="kube-system")).get_json()
	assert body["response"]["allowed"] is True
	assert "patch" not in body["response"]


def test_object_namespace_defaults_to_request_namespace():
	client = make_client()
	obj = {"metadata": {"generateName": "web-"}}
	body = client.post("/mutate", json=admission_review("u8", obj, namespace="prod")).get_json()
	ops = patch_ops(decode_patch(body))
	assert ops["/metadata/labels"]["value"] == {"team": "x"}


def test_service_and_claim_kinds():
	client = make_client()
	body = client.post(
		"/mutate", json=admission_review("u9", minimal_obj(name="svc"), kind="Service")
	).get_json()
	ops = patch_ops(decode_patch(body))
	assert ops["/metadata/labels"]["value"] == {"tier": "web"}
	assert ops["/metadata/annotations"]["value"]["cost-center"] == "42"

	body = client.post(
		"/mutate",
		json=admission_review("u10", minimal_obj(ns="data"), kind="PersistentVolumeClaim", namespace="data"),
	).get_json()
	ops = patch_ops(decode_patch(body))
	assert ops["/metadata/labels"]["value"] == {"backup": "daily"}


def test_unknown_kind_allows_without_patch():
	client = make_client()
	body = client.post(
		"/mutate", json=admission_review("u11", minimal_obj(), kind="Deployment")
	).get_json()
	assert body["response"]["allowed"] is True
	assert body["response"]["uid"] == "u11"
	assert "patch" not in body["response"]


def test_undecodable_known_kind_is_denied():
	client = make_client()
	obj = {"metadata": {"name": "p", "labels": {"team": 5}}}
	r = client.post("/mutate", json=admission_review("u12", obj))
	assert r.status_code == 200
	body = r.get_json()
	assert body["response"]["allowed"] is False
	assert body["response"]["uid"] == "u12"
	assert "metadata.labels.team" in body["response"]["status"]["message"]


def test_serve_path_is_an_alias():
	client = make_client()
	r = client.post("/serve", json=admission_review("u13", minimal_obj()))
	assert r.status_code == 200
	assert decode_patch(r.get_json()) is not None


def test_empty_body_400():
	client = make_client()
	r = client.post("/mutate", data=b"", content_type="application/json")
	assert r.status_code == 400


def test_wrong_content_type_415():
	client = make_client()
	r = client.post("/mutate", data=json.dumps(admission_review("u", minimal_obj())), content_type="text/plain")
	assert r.status_code == 415


def test_invalid_json_body_200_with_message():
	client = make_client()
	r = client.post("/mutate", data=b"{not json", content_type="application/json")
	assert r.status_code == 200
	body = r.get_json()
	assert body["kind"] == "AdmissionReview"
	assert body["response"]["allowed"] is False
	assert body["response"]["status"]["message"]


def test_review_without_request_200_with_message():
	client = make_client()
	r = client.post("/mutate", json={"not": "admission-review"})
	assert r.status_code == 200
	body = r.get_json()
	assert body["response"]["allowed"] is False
	assert "no request" in body["response"]["status"]["message"]


def test_health_ok(monkeypatch: pytest.MonkeyPatch):
	app = import_app(monkeypatch)
	client = app.app.test_client()
	r = client.get("/health")
	assert r.status_code == 200
	assert r.get_json()["status"] == "healthy"


@pytest.mark.parametrize(
	"namespace,configured,skip,expected",
	[
		("kube-system", True, "true", (False, "ignored-namespace")),
		("staging", False, "true", (False, "not-configured")),
		("prod", True, "true", (False, "opted-out")),
		("prod", True, "", (True, "required")),
	],
)
def test_mutation_required_check_order(namespace, configured, skip, expected):
	models = importlib.import_module("k8s_metadata_injector.models")
	mutation = importlib.import_module("k8s_metadata_injector.mutation")
	meta = models.ObjectMetaModel(
		name="p", namespace=namespace, annotations={"k8s-metadata-injector.kubernetes.io/skip": skip}
	)
	spec = models.MetadataSpec() if configured else None
	assert (
		mutation.mutation_required(
			meta, spec, ("kube-system", "kube-public"), "k8s-metadata-injector.kubernetes.io/skip"
		)
		== expected
	)
