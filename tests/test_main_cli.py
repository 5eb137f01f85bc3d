from main import _parse_args


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"
    assert args.host == "0.0.0.0"
    assert args.port == 8000


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "127.0.0.1", "--port", "8080"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 8080


def test_dispatch_subcommand_available() -> None:
    args = _parse_args(["dispatch"])
    assert args.command == "dispatch"


def test_webhook_status_accepts_limit() -> None:
    assert _parse_args(["webhook-status"]).limit == 10
    assert _parse_args(["webhook-status", "--limit", "25"]).limit == 25
