"""Source stage: fetch a ref from GitHub into the artifact store."""

import logging
from typing import Dict

from deploy_pipeline.artifacts.archive import ArchiveError, normalize_tarball
from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.artifacts.store import ArtifactStore
from deploy_pipeline.definition.models import ActionDefinition
from deploy_pipeline.errors import SourceFetchError
from deploy_pipeline.github.client import GitHubClient
from deploy_pipeline.permissions.models import Role
from deploy_pipeline.stages.models import ActionOutcome, RunContext

logger = logging.getLogger(__name__)


class GitHubSourceAction:
    """Fetches the triggering commit (or the configured branch head).

    The complete working tree is stored once per declared output artifact.
    """

    def __init__(self, github_client: GitHubClient, artifact_store: ArtifactStore):
        self.github_client = github_client
        self.artifact_store = artifact_store

    def resolve_ref(self, action: ActionDefinition, context: RunContext) -> str:
        """The commit that triggered the run, else the configured branch."""
        return context.trigger.fetch_ref or f"refs/heads/{action.configuration['Branch']}"

    async def run(
        self,
        action: ActionDefinition,
        stage_name: str,
        inputs: Dict[str, ArtifactRef],
        role: Role,
        context: RunContext,
    ) -> ActionOutcome:
        owner = action.configuration["Owner"]
        repo = action.configuration["Repo"]
        ref = self.resolve_ref(action, context)

        tarball = await self.github_client.download_tarball(owner, repo, ref)

        try:
            tree = normalize_tarball(tarball)
        except ArchiveError as e:
            raise SourceFetchError(
                f"Source archive for {owner}/{repo}@{ref} is unusable: {e}",
                reason=SourceFetchError.MISSING_REF,
            ) from e

        outputs = []
        for name in action.output_artifacts:
            ref_out = await self.artifact_store.put(
                name, tree, run_id=context.run_id, producer_stage=stage_name
            )
            outputs.append(ref_out)

        logger.info(
            "Source fetched",
            extra={
                "run_id": context.run_id,
                "repository": f"{owner}/{repo}",
                "ref": ref,
                "artifacts": [o.label for o in outputs],
            },
        )
        return ActionOutcome(
            outputs=outputs,
            logs=f"Fetched {owner}/{repo}@{ref} ({len(tree)} bytes)",
            details={"ref": ref},
        )
