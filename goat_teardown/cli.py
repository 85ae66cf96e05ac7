import argparse
import logging
import sys

from botocore.exceptions import ClientError, NoCredentialsError

from goat_teardown import config
from goat_teardown.cleaner import AWSGoatCleaner
from goat_teardown.importer import TerraformImporter
from goat_teardown.terraform import TerraformError

logger = logging.getLogger('goat_teardown')


def build_parser():
    parser = argparse.ArgumentParser(prog='goat-teardown', description="AWSGoat teardown and Terraform state resync")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO",
                        help="Set logging level")
    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_common(sub):
        sub.add_argument("--region", action="append", dest="regions",
                         help=f"AWS region, repeatable (default: $AWS_REGION or {config.DEFAULT_REGION})")
        sub.add_argument("--tag-key", help=f"Tag key (default: $TAG_KEY or {config.DEFAULT_TAG_KEY})")
        sub.add_argument("--tag-value", help=f"Tag value (default: $TAG_VALUE or {config.DEFAULT_TAG_VALUE})")

    delete = subparsers.add_parser('delete', help="Delete every AWSGoat resource in dependency order")
    add_common(delete)
    delete.add_argument("--dry-run", action="store_true", help="Show what would be deleted without deleting anything")
    delete.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    listing = subparsers.add_parser('list', help="List ARNs carrying the project tag")
    add_common(listing)

    importer = subparsers.add_parser('import', help="Import existing resources into Terraform state")
    importer.add_argument("module", choices=config.MODULES)
    importer.add_argument("student_id", nargs="?", default="default")
    importer.add_argument("--region", action="append", dest="regions", help="AWS region")
    importer.add_argument("--root", default=".", help="Directory holding modules/<module> (default: .)")
    importer.add_argument("--account-id", help="AWS account id (default: $ACCOUNT_ID or STS)")
    return parser


def load_settings(args):
    settings = config.Settings.from_env()
    if args.regions:
        settings.regions = args.regions
    if getattr(args, 'tag_key', None):
        settings.tag_key = args.tag_key
    if getattr(args, 'tag_value', None):
        settings.tag_value = args.tag_value
    if getattr(args, 'account_id', None):
        settings.account_id = args.account_id
    return settings


def confirm(settings):
    print("\n" + "=" * 80)
    print(f"WARNING: this deletes every resource tagged {settings.tag_key}={settings.tag_value}")
    print(f"in {', '.join(settings.regions)}, plus IAM roles/policies and S3 buckets of AWSGoat.")
    print("This action CANNOT be undone!")
    print("=" * 80)
    answer = input(f"\nType '{settings.tag_value}' to confirm: ")
    return answer == settings.tag_value


def cmd_delete(args, settings):
    if not (args.yes or args.dry_run) and not confirm(settings):
        print("\nCleanup cancelled.")
        return 0
    AWSGoatCleaner(settings, dry_run=args.dry_run).run_cleanup()
    return 0


def cmd_list(args, settings):
    cleaner = AWSGoatCleaner(settings)
    logger.info(f"Listing resources with tag {settings.tag_key}={settings.tag_value} "
                f"in region {', '.join(settings.regions)}...")
    for region in settings.regions:
        try:
            arns = cleaner.get_tagged_resources(region)
        except ClientError as e:
            logger.error(f"get-resources failed (check permissions): {e}")
            return 1
        for arn in arns:
            print(arn)
    return 0


def cmd_import(args, settings):
    try:
        importer = TerraformImporter(settings, args.module, args.student_id, root=args.root)
        importer.run()
    except TerraformError as e:
        logger.error(str(e))
        return 1
    return 0


COMMANDS = {
    'delete': cmd_delete,
    'list': cmd_list,
    'import': cmd_import,
}


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # botocore is chatty below WARNING
    logging.getLogger('botocore').setLevel(logging.WARNING)

    settings = load_settings(args)
    try:
        return COMMANDS[args.command](args, settings)
    except NoCredentialsError:
        logger.error("AWS credentials not found! Configure them with: aws configure")
        return 1


if __name__ == "__main__":
    sys.exit(main())
