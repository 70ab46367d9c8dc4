import json
import sys
from typing import Any, Callable, Optional, TextIO
from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError
import arguments
import testenv
from errors import LcrError, SetupError
from logger import logger
from portForward import active_tunnels


def _create(pipeline: testenv.Pipeline, params: dict[str, Any]) -> Any:
    return pipeline.create(testenv.CreateInput.model_validate(params)).to_dict()


def _delete(pipeline: testenv.Pipeline, params: dict[str, Any]) -> Any:
    return {"failedSteps": pipeline.delete(testenv.DeleteInput.model_validate(params))}


def _create_pull_secret(pipeline: testenv.Pipeline, params: dict[str, Any]) -> Any:
    inp = testenv.CreateImagePullSecretInput.model_validate(params)
    return {"secret": testenv.create_image_pull_secret(inp, read_config=pipeline.read_config, k8s_client=pipeline.k8s_client)}


def _list_pull_secrets(pipeline: testenv.Pipeline, params: dict[str, Any]) -> Any:
    inp = testenv.ListImagePullSecretsInput.model_validate(params)
    secrets = testenv.list_image_pull_secrets(inp, k8s_client=pipeline.k8s_client)
    return {"secrets": [{"namespace": ns, "secretName": name} for ns, name in secrets]}


HANDLERS: dict[str, Callable[[testenv.Pipeline, dict[str, Any]], Any]] = {
    arguments.SETUP: _create,
    arguments.TEARDOWN: _delete,
    arguments.CREATE_PULL_SECRET: _create_pull_secret,
    arguments.LIST_PULL_SECRETS: _list_pull_secrets,
}


def error_to_dict(e: Exception) -> dict[str, Any]:
    ret: dict[str, Any] = {"type": type(e).__name__, "message": str(e)}
    if isinstance(e, SetupError):
        ret["stage"] = e.stage
    return ret


def handle(pipeline: testenv.Pipeline, method: str, params: dict[str, Any]) -> Any:
    handler = HANDLERS.get(method)
    if handler is None:
        raise LcrError(f"unknown method {method!r}")
    return handler(pipeline, params)


def _read_input(path: str) -> dict[str, Any]:
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with open(path) as f:
            data = json.load(f)
    if not isinstance(data, dict):
        raise LcrError("input must be a JSON object")
    return data


def serve(pipeline: testenv.Pipeline, stdin: TextIO, stdout: TextIO) -> None:
    """One JSON request per line: {"id", "method", "params"} -> {"id", "result"|"error"}."""
    try:
        for line in stdin:
            if not line.strip():
                continue
            req_id: Optional[Any] = None
            try:
                req = json.loads(line)
                req_id = req.get("id")
                resp = {"id": req_id, "result": handle(pipeline, req.get("method", ""), req.get("params") or {})}
            except Exception as e:
                # Every request gets a response; only the end of stdin ends the loop.
                logger.error(f"Request {req_id} failed: {e}")
                resp = {"id": req_id, "error": error_to_dict(e)}
            print(json.dumps(resp), file=stdout, flush=True)
    finally:
        n = active_tunnels.stop_all()
        if n:
            logger.info(f"Stopped {n} port-forward(s) on exit")


def main(argv: Optional[list[str]] = None) -> int:
    args = arguments.parse_args(argv)
    pipeline = testenv.Pipeline()

    if args.subcommand == arguments.SERVE:
        serve(pipeline, sys.stdin, sys.stdout)
        return 0

    try:
        result = handle(pipeline, args.subcommand, _read_input(args.input))
    except (LcrError, ApiException, ValidationError, ValueError, OSError) as e:
        logger.error(f"{args.subcommand} failed: {e}")
        print(json.dumps({"error": error_to_dict(e)}, indent=2))
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
