from decimal import Decimal

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('member', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Coupon',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('name', models.CharField(max_length=100)),
                ('code', models.CharField(max_length=50, unique=True)),
                ('description', models.TextField(blank=True, null=True)),
                ('discount_amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('discount_type', models.CharField(choices=[('fixed', '정액'), ('percentage', '정률(%)')], default='fixed', max_length=20)),
                ('minimum_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=10)),
                ('max_usage', models.PositiveIntegerField(default=0, help_text='최대 사용 횟수 (0 이면 무제한)')),
                ('used_count', models.PositiveIntegerField(default=0, editable=False)),
                ('start_at', models.DateTimeField()),
                ('end_at', models.DateTimeField(blank=True, null=True)),
                ('is_active', models.BooleanField(default=True)),
            ],
            options={
                'db_table': 'coupons',
                'ordering': ['-created_at', '-id'],
                'indexes': [models.Index(fields=['is_active', 'start_at', 'end_at'], name='coupons_active_window_idx')],
            },
        ),
        migrations.CreateModel(
            name='CouponCode',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('code', models.CharField(max_length=32, unique=True)),
                ('status', models.CharField(choices=[('unused', '미사용'), ('used', '사용됨'), ('expired', '만료됨'), ('gifted', '선물됨')], default='unused', max_length=10)),
                ('used_at', models.DateTimeField(blank=True, null=True)),
                ('gifted_at', models.DateTimeField(blank=True, null=True)),
                ('accepted_at', models.DateTimeField(blank=True, null=True)),
                ('coupon', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='codes', to='coupon.coupon')),
                ('gifted_by_member', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='gifted_coupon_codes', to='member.member')),
                ('member', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='coupon_codes', to='member.member')),
            ],
            options={
                'db_table': 'coupon_codes',
                'ordering': ['id'],
                'indexes': [
                    models.Index(fields=['coupon', 'status'], name='coupon_codes_coupon_status'),
                    models.Index(fields=['member', 'status'], name='coupon_codes_member_status'),
                ],
            },
        ),
        migrations.CreateModel(
            name='MemberCoupon',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('status', models.CharField(choices=[('active', '유효'), ('used', '사용됨'), ('expired', '만료됨')], default='active', max_length=10)),
                ('used_at', models.DateTimeField(blank=True, null=True)),
                ('expired_at', models.DateTimeField(blank=True, null=True)),
                ('coupon_code', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='member_coupons', to='coupon.couponcode')),
                ('member', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='member_coupons', to='member.member')),
            ],
            options={
                'db_table': 'member_coupons',
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['member', 'status'], name='member_coupons_member_status'),
                    models.Index(fields=['coupon_code', 'status'], name='member_coupons_code_status'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('member', 'coupon_code'), name='member_coupons_member_code_uniq'),
                ],
            },
        ),
    ]
