# anipler

anipler moves torrents from a remote qBittorrent seedbox to your home machine in
three stages:

1. **Track**: the daemon regularly asks qBittorrent for torrents tagged
   `anipler` and records them in a small SQLite database. A torrent counts as
   ready once its progress reaches 100 %. Torrents added before the daemon's
   first run are ignored.
2. **Relay**: on a second schedule the daemon copies every ready torrent from
   the seedbox into `<storage path>/artifacts/<hash>` with `rsync` over `ssh`.
   At most one transfer runs at a time; a transfer job that starts while
   another is running is skipped.
3. **Pull**: the puller, run on your home machine, asks an HTTP API on the
   relay which artifacts are available, copies each one with `rsync` and
   confirms it.

A Telegram bot, listening to one chat only, lets you start jobs by hand:

| Command     | Effect                                          |
|-------------|-------------------------------------------------|
| `/pull`     | Fetch torrent information from the seedbox.     |
| `/transfer` | Transfer ready torrents from seedbox to relay.  |
| `/report`   | List ready torrents and available artifacts.    |

## What this package does not include

The daemon does not serve the HTTP API that the puller talks to
(`GET /api/artifacts` and `POST /api/artifacts/<hash>/confirm`).
`ANIPLER_API_ADDR` and `ANIPLER_API_KEY` are read and checked, but no server is
started. To use the puller you need something else on the relay that answers
those requests. It can use `StorageManager.list_ready_artifacts()` and
`StorageManager.finalize_artifact()` from `anipler.storage`. The latter marks
an artifact archived and deletes its directory.

## Installation

```
pip install .
```

`rsync` and `ssh` must be available on both the relay and the home machine.

## Running the daemon

The daemon reads its settings from environment variables:

| Variable                      | Required | Default           |
|-------------------------------|----------|-------------------|
| `ANIPLER_QBIT_URL`            | yes      |                   |
| `ANIPLER_QBIT_USERNAME`       | yes      |                   |
| `ANIPLER_QBIT_PASSWORD`       | yes      |                   |
| `ANIPLER_STORAGE_PATH`        | yes      |                   |
| `ANIPLER_SEEDBOX_SSH_HOST`    | yes      |                   |
| `ANIPLER_SEEDBOX_SSH_KEY`     | yes      |                   |
| `ANIPLER_TELEGRAM_BOT_TOKEN`  | yes      |                   |
| `ANIPLER_TELEGRAM_CHAT_ID`    | yes      |                   |
| `ANIPLER_API_KEY`             | yes      |                   |
| `ANIPLER_PULL_CRON`           | no       | `0 0/30 * * * *`  |
| `ANIPLER_TRANSFER_CRON`       | no       | `0 0 * * * *`     |
| `ANIPLER_RSYNC_SPEED_LIMIT`   | no       | no limit          |
| `ANIPLER_API_ADDR`            | no       | `0.0.0.0:8080`    |

Notes on these settings:

- **Cron expressions** put seconds first and use local time. Six or seven
  fields are accepted; the seventh is the year. With five fields, the second is
  taken to be 0.
- **`ANIPLER_SEEDBOX_SSH_KEY`** must name an existing file.
- **`ANIPLER_STORAGE_PATH`** should be an existing directory. The database is
  kept there as `storage.db`.
- **`ANIPLER_RSYNC_SPEED_LIMIT`** is passed to rsync as `--bwlimit`.

If a required variable is missing or a value is malformed, the daemon prints
the error and exits with status 1.

```
anipler-daemon
```

Options:

- `--no-transfer`: log the rsync commands but do not run them. The torrents
  stay marked as ready.
- `--stateless`: keep the database in memory instead of in
  `$ANIPLER_STORAGE_PATH/storage.db`.
- `--version`: print the version and exit.

The daemon pulls once when it starts, then registers the bot's commands and
follows its schedules. It stops on SIGINT or SIGTERM, or if the bot's command
channel closes.

## Running the puller

The puller reads a TOML file:

```toml
api_url = "http://relay.example.com:8080"
api_key = "placeholder"
ssh_host = "relay.example.com"
destination = "~/Downloads/anime"   # optional, defaults to the current directory
```

The key is sent as `authorization: Bearer <api_key>`. `destination` is
expanded for a leading `~` and for `$NAME` / `${NAME}` environment variables;
an unset variable is an error.

The file is looked up in this order:

1. the `ANIPLER_CONFIG_PATH` environment variable,
2. the `--config` / `-c` option,
3. `puller.toml` in the `anipler` folder of your user configuration directory.

```
anipler-puller
anipler-puller --config ./puller.toml
```

The puller copies artifacts one by one with
`rsync --delete --partial --recursive -s --rsh ssh`. After each copy it
confirms the artifact with the API. It stops after the last artifact, or at
the first transfer that fails.

## Development

```
pip install -e ".[test]"
pytest
```