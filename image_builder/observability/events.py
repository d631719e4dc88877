from __future__ import annotations

# Runtime lifecycle
STARTUP_INVALID_CONFIG = "startup.invalid_config"

# Build pipeline
BUILD_START = "build.start"
BUILD_COMPLETE = "build.complete"
BUILD_FAILED = "build.failed"
BUILD_STEP_START = "build.step.start"
BUILD_STEP_COMPLETE = "build.step.complete"
BUILD_STEP_DRY_RUN = "build.step.dry_run"
BUILD_STAGING_DISCARDED = "build.staging.discarded"
BUILD_PROMOTED = "build.promoted"
BUILD_PREVIOUS_RETAINED = "build.previous.retained"

# npm
NPM_COMMAND_START = "npm.command.start"
NPM_COMMAND_COMPLETE = "npm.command.complete"
NPM_COMMAND_FAILED = "npm.command.failed"
NPM_CACHE_SEED_SKIPPED = "npm.cache.seed_skipped"

# Filesystem
FS_DIRECTORY_PROVISIONED = "fs.directory.provisioned"
FS_TREE_COPIED = "fs.tree.copied"
FS_PERMISSIONS_APPLIED = "fs.permissions.applied"

# Launch
LAUNCH_PRIVILEGE_DROPPED = "launch.privilege.dropped"
LAUNCH_PRIVILEGE_UNCHANGED = "launch.privilege.unchanged"
LAUNCH_EXEC = "launch.exec"
LAUNCH_FAILED = "launch.failed"

# Verification
IMAGE_VERIFY_COMPLETE = "image.verify.complete"
IMAGE_VERIFY_FAILED = "image.verify.failed"

# Dockerfile tooling
DOCKERFILE_RENDERED = "dockerfile.rendered"
DOCKERFILE_AUDIT_COMPLETE = "dockerfile.audit.complete"
DOCKERFILE_AUDIT_FAILED = "dockerfile.audit.failed"
