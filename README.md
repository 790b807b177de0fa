# botrelay

`botrelay` is the core of a service that connects chat-channel bots to agent
command-line tools. It keeps track of bots and their channel logins. It starts
one channel runtime per bot and mirrors that runtime's state back onto the bot.
It sends incoming messages through a per-bot queue to an agent and delivers the
reply.

The package has no runtime dependencies. You supply repositories, the channel
provider, the cipher, the agent executor and the reply gateway as plain Python
objects that have the methods listed below.

## Modules

### `botrelay.models`

This module holds the shared dataclasses:

- `User`, `Bot`, `ChannelAccount`, `ChannelBinding`, `AgentCapability`;
- `Spec`, `Request`, `Response`;
- `ReplyTarget`, which has `metadata_value(key)`;
- `RuntimeEvent`, `RuntimeStateEvent`, `RuntimeCallbacks`, `StartRuntimeRequest`.

It also has:

- the string enums `BotConnectionStatus`, `BindingStatus` and `RuntimeState`;
- the errors `NotFoundError`, `InvalidArgumentError` and `SessionExpiredError`;
- `new_prefixed_id(prefix)`, which returns a time-ordered id such as
  `bot_01J...`.

All timeouts are in seconds.

### `botrelay.user_service`

`UserService(users).resolve_user(external_user_id)` calls
`users.find_or_create_by_external_user_id`.

### `botrelay.service`

`BotService(users, bots, bindings, accounts, capabilities, cipher, provider, runtimes=None)`
has these methods:

| Method | What it does |
| --- | --- |
| `create_bot(CreateBotInput)` | Stores a new bot with status `login_required`. |
| `list_bots(external_user_id)` | Lists one user's bots as `BotListItem`s. |
| `delete_bot(bot_id)` | Removes the bot and its bindings. |
| `configure_bot_agent(ConfigureBotAgentInput)` | Sets the bot's capability id and agent mode. |
| `start_login(StartBotLoginInput)` | Opens a binding through `provider.create_binding(binding_id, channel_type)` and returns the QR code. |
| `refresh_login(binding_id)` | Polls `provider.refresh_binding(provider_binding_ref)`. |
| `list_agent_capabilities()` | Lists stored capabilities. |
| `set_capability_discoverer(discoverer)` | Sets a discoverer that `list_agent_capabilities()` asks to `refresh()` first. |

What `refresh_login` does depends on the provider's answer:

- **Confirmed**: it encrypts the credentials with `cipher.encrypt` and upserts a
  `ChannelAccount`. It links the account to the bot and starts the bot's
  runtime.
- **Failed or expired**: it marks the bot as `error`.

Missing input raises `InvalidArgumentError`. Errors from the repositories and
the provider pass through unchanged.

### `botrelay.discoverer`

`AgentCapabilityDiscoverer(repo, look_path=None).refresh()` looks up the `codex`
and `claude` commands and upserts one `AgentCapability` for each.

- `look_path` defaults to `shutil.which`.
- A command that is found gets its resolved path, is marked available and has
  its detection time updated.
- A command that is missing keeps its previous detection time.

### `botrelay.cli_resolver`

`BotCLIResolver(bots, capabilities, BotCLIResolverConfig(timeout, workspace_root, sqlite_path)).resolve(bot_id)`
builds a `Spec` from the bot's capability and mode. When `workspace_root` is
set, it creates `<workspace_root>/<bot_id>/workspace`.

It raises these errors:

- `BotCLIConfigMissingError` when the capability or mode is not set, the
  capability is not found, or the capability has no command;
- `BotCLIUnavailableError` when the capability is not available;
- `BotCLIUnsupportedModeError` when the capability does not support the bot's
  mode.

### `botrelay.connection_manager`

`BotConnectionManager(bots, accounts, starter, *, cipher=None, logger=None, on_event=None)`
starts at most one runtime per bot with `starter.start_runtime(request)`.

- `start(bot_id)` starts the runtime. It raises `RuntimeAlreadyStartedError`
  if a runtime for that bot is already running or starting. If the start fails,
  the bot's slot is freed again.
- `active(bot_id)` reports whether a runtime is running or starting.
- Runtime events are logged and passed on to `on_event`.
- The state callbacks update the bot:
  - `connected` sets the bot to `connected`;
  - `error` sets it to `login_required` if the error was caused by a
    `SessionExpiredError`, otherwise to `error`;
  - `stopped` forgets the handle.

### `botrelay.orchestrator`

`BotMessageOrchestrator(executor, replies, resolver)` processes
`InboundMessage`s. Each bot has a worker thread that handles its messages one
at a time. Different bots run in parallel.

- **Busy replies.** A message that arrives while the bot's queue is full gets a
  busy reply. The queue holds `spec.queue_size` messages, or 1 if that is not
  set.
- **Duplicates.** A message id is dropped while it is being processed and for
  ten minutes after it succeeds. After a failure it may be sent again.
- **Timeouts and failures.** When the agent times out, it gets a timeout reply.
  Any other error gets a failure reply. If the error has a `response` attribute
  holding a `Response` with a `runtime_type`, that response's text is shown
  instead.
- **Deadlines.** Processing is limited by the larger of the processing timeout
  (default 30 s) and `spec.timeout`. Each reply has a fresh window (default
  5 s).
- **Idle workers.** A worker with nothing to do exits after the idle timeout.
  Its bot state is then removed.

The settings and helper methods are:

- `set_processing_timeout(seconds)`, `set_reply_timeout(seconds)` and
  `set_worker_idle_timeout(seconds)` change these limits;
- `set_message_context(fn)` derives each message's context value from the one
  passed to `handle_message`;
- `has_bot_state` and `active_count` report on a bot's worker state.

Executors and reply gateways receive a call context object with these members:

- `value`: the message context value;
- `deadline`: a `time.monotonic()` instant, or `None`;
- `remaining()`;
- `is_done()`;
- `wait(timeout)`;
- `error`: set once the context has expired or been cancelled.

## Example

```python
import time

from botrelay.models import Response, Spec
from botrelay.orchestrator import BotMessageOrchestrator, InboundMessage


class EchoExecutor:
    def send(self, context, bot_id, spec, request):
        return Response(text=f"echo: {request.prompt}")


class PrintGateway:
    def reply(self, context, target, response):
        print(target.recipient_id, response.text)


class FixedResolver:
    def resolve(self, bot_id):
        return Spec(type="codex-exec", command="codex")


orchestrator = BotMessageOrchestrator(EchoExecutor(), PrintGateway(), FixedResolver())
orchestrator.handle_message(
    InboundMessage(bot_id="bot_1", message_id="m1", sender="user_1", text="hello")
)
time.sleep(0.5)  # processing happens on a background worker thread
```

## What this package does not do

`botrelay` has no storage, no HTTP API or web interface, no command-line
program, no channel client, no encryption and no agent executor of its own.
Every service and manager here works through objects you pass in:

- repositories with `get_by_id`, `create`, `update`, `upsert`, `list` and
  similar methods;
- a provider with `create_binding` and `refresh_binding`;
- a runtime starter with `start_runtime`;
- a cipher with `encrypt` and `decrypt`;
- an executor with `send`;
- a reply gateway with `reply`.

## Running the tests

```
pip install -e ".[test]"
pytest
```