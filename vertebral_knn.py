"""
Vertebral Column Classification: k-Nearest Neighbors ties
Unweighted vs kernel-weighted k-NN with k=2 on the orthopaedic patient data
"""

import os

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.io import arff
from scipy.stats import norm

from sklearn.linear_model import LogisticRegression
from sklearn.metrics import accuracy_score, confusion_matrix
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import MinMaxScaler, StandardScaler

from tie_neighbors import KernelWeightedKNN, UniformVoteKNN

RANDOM_STATE = 42
# UCI vertebral column data, two-class Weka file:
# https://archive.ics.uci.edu/dataset/212/vertebral+column (download and unzip into data/)
DATA_PATH = 'data/column_2C_weka.arff'
K_NEIGHBORS = 2
TEST_SIZE = 1 / 3
TIE_REPEATS = 25

FEATURE_COLS = [
    'pelvic_incidence', 'pelvic_tilt', 'lumbar_lordosis_angle',
    'sacral_slope', 'pelvic_radius', 'degree_spondylolisthesis',
]
TARGET_COL = 'class'
POSITIVE_CLASS = 'Abnormal'
CLASS_PALETTE = {'Abnormal': '#e74c3c', 'Normal': '#2ecc71'}

SCALERS = {
    'minmax': MinMaxScaler,
    'zscore': StandardScaler,
}

sns.set_style('whitegrid')
plt.rcParams['figure.figsize'] = (12, 8)


def _banner(title):
    print("\n" + "=" * 80 + f"\n{title}\n" + "=" * 80)


class VertebralKNNStudy:
    def __init__(self, data_path=DATA_PATH, output_dir='.', random_state=RANDOM_STATE):
        """Initialize the study"""
        self.data_path = data_path
        self.output_dir = output_dir
        self.random_state = random_state
        self.df = None
        self.df_norm = None
        self.scaler = None
        self.coefficients = None
        self.selected_features = None
        self.train_df, self.test_df = None, None
        self.unweighted_model = None
        self.weighted_model = None
        self.unweighted_predictions = None
        self.weighted_predictions = None
        self.comparison = None
        self._unweighted_voters = {}
        self.generated_files = []

    def _manual_arff_parse(self, filepath):
        """Manual ARFF parser as fallback"""
        attributes, data_rows, data_section = [], [], False
        with open(filepath, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('%'):
                    continue
                if line.lower() == '@data':
                    data_section = True
                    continue
                if line.lower().startswith('@attribute'):
                    name = line[len('@attribute'):].strip()
                    if name[:1] in "'\"":
                        attributes.append(name[1:name.index(name[0], 1)])
                    else:
                        attributes.append(name.split()[0])
                elif data_section:
                    values = [v.strip().strip("'\"") for v in line.split(',')]
                    if len(values) == len(attributes):
                        data_rows.append(values)
        return pd.DataFrame(data_rows, columns=attributes).replace('?', np.nan)

    def _resolve_path(self):
        if os.path.exists(self.data_path):
            return self.data_path
        for candidate in (os.path.join('data', os.path.basename(self.data_path)),
                          os.path.basename(self.data_path)):
            if os.path.exists(candidate):
                return candidate
        raise FileNotFoundError(f"Dataset not found: {self.data_path}")

    def _savefig(self, filename):
        os.makedirs(self.output_dir, exist_ok=True)
        path = os.path.join(self.output_dir, filename)
        plt.tight_layout()
        plt.savefig(path, dpi=300)
        plt.close()
        self.generated_files.append(filename)
        print(f"✓ Saved: {filename}")
        return path

    def load_data(self):
        """Load the vertebral column dataset"""
        _banner("1. LOADING DATA")
        self.data_path = self._resolve_path()

        try:
            data, meta = arff.loadarff(self.data_path)
            df = pd.DataFrame(data)
            for col in df.columns:
                if df[col].dtype == object:
                    df[col] = df[col].str.decode('utf-8')
        except (arff.ArffError, ValueError, NotImplementedError) as exc:
            print(f"Using manual ARFF parser ({exc})...")
            df = self._manual_arff_parse(self.data_path)

        # The UCI file names one attribute 'pelvic_tilt numeric'
        df.columns = [str(c).strip().split()[0] for c in df.columns]
        missing = [c for c in FEATURE_COLS + [TARGET_COL] if c not in df.columns]
        if missing:
            raise ValueError(f"Dataset is missing columns: {missing}")

        df = df[FEATURE_COLS + [TARGET_COL]].copy()
        df[FEATURE_COLS] = df[FEATURE_COLS].apply(pd.to_numeric, errors='coerce')
        df[TARGET_COL] = df[TARGET_COL].astype(str)
        df.insert(0, 'id', np.arange(1, len(df) + 1))
        self.df = df

        print(f"✓ Loaded: {self.df.shape[0]} samples, {len(FEATURE_COLS)} features")
        return self.df

    def exploratory_data_analysis(self):
        """Print a short overview of the raw data"""
        _banner("2. EXPLORATORY DATA ANALYSIS")

        print("\nDataset Overview:")
        print(f"   Shape: {self.df.shape}")
        print(f"   Total Missing: {self.df[FEATURE_COLS].isnull().sum().sum()}")

        print("\nClass Distribution:")
        class_counts = self.df[TARGET_COL].value_counts()
        print(class_counts.to_string())

        print("\nFeature Summary:")
        print(self.df[FEATURE_COLS].describe().T.round(2).to_string())
        return class_counts

    def visualize_data(self):
        """Create visualizations for EDA"""
        _banner("3. DATA VISUALIZATION")

        # Class distribution
        fig, ax = plt.subplots(figsize=(8, 6))
        class_counts = self.df[TARGET_COL].value_counts()
        bars = ax.bar(class_counts.index.astype(str), class_counts.values,
                      color=[CLASS_PALETTE.get(c, 'steelblue') for c in class_counts.index],
                      edgecolor='black', linewidth=1.5)
        ax.set_title('Class Distribution', fontsize=16, fontweight='bold')
        ax.set_ylabel('Count', fontweight='bold')
        for bar in bars:
            height = bar.get_height()
            ax.text(bar.get_x() + bar.get_width() / 2., height,
                    f'{int(height)}', ha='center', va='bottom', fontweight='bold')
        self._savefig('class_distribution.png')

        # Feature distributions by class
        long_df = self.df.melt(id_vars=[TARGET_COL], value_vars=FEATURE_COLS,
                               var_name='feature', value_name='value')
        grid = sns.catplot(data=long_df, x=TARGET_COL, y='value', col='feature',
                           hue=TARGET_COL, palette=CLASS_PALETTE, kind='box',
                           col_wrap=3, sharey=False, height=3.5, legend=False)
        grid.set_titles('{col_name}', fontweight='bold')
        grid.figure.suptitle('Measurements by Class', fontsize=16, fontweight='bold', y=1.02)
        self._savefig('feature_distributions.png')

        # Correlation heatmap
        fig, ax = plt.subplots(figsize=(10, 8))
        corr = self.df[FEATURE_COLS].corr()
        sns.heatmap(corr, annot=True, fmt='.2f', cmap='coolwarm', center=0,
                    square=True, linewidths=0.5, ax=ax, vmin=-1, vmax=1)
        ax.set_title('Feature Correlation Heatmap', fontsize=16, fontweight='bold')
        self._savefig('correlation_heatmap.png')

    def normalize_features(self, method='minmax'):
        """Rescale the six measurements; id and class are left as they are"""
        _banner("4. NORMALIZATION")
        if method not in SCALERS:
            raise ValueError(f"Unknown normalization method: {method!r}")
        if self.df is None:
            raise RuntimeError("load_data() must run before normalize_features()")

        self.scaler = SCALERS[method]()
        self.df_norm = self.df.copy()
        self.df_norm[FEATURE_COLS] = self.scaler.fit_transform(self.df[FEATURE_COLS])

        print(f"✓ Method: {method}")
        print(self.df_norm[FEATURE_COLS].agg(['min', 'max', 'mean']).T.round(3).to_string())
        return self.df_norm

    @staticmethod
    def _aliased_columns(design):
        """Columns that are linear combinations of the ones before them"""
        aliased, rank = [], 0
        for j in range(design.shape[1]):
            kept = [i for i in range(j + 1) if i not in aliased]
            new_rank = np.linalg.matrix_rank(design[:, kept])
            if new_rank == rank:
                aliased.append(j)
            else:
                rank = new_rank
        return aliased

    def select_features(self, n_features=2):
        """
        Logistic regression of class on all measurements; keep the n_features
        predictors with the smallest Wald p-values.

        Measurements that are exact linear combinations of earlier ones are
        dropped from the fit and reported with NaN statistics.
        """
        _banner("5. FEATURE SELECTION (LOGISTIC REGRESSION)")
        if not 1 <= n_features <= len(FEATURE_COLS):
            raise ValueError(f"n_features must be between 1 and {len(FEATURE_COLS)}")
        if self.df_norm is None:
            raise RuntimeError("normalize_features() must run before select_features()")

        X = self.df_norm[FEATURE_COLS].to_numpy(dtype=float)
        y = (self.df_norm[TARGET_COL] == POSITIVE_CLASS).astype(int).to_numpy()
        design = np.column_stack([np.ones(len(X)), X])

        aliased = self._aliased_columns(design)
        kept = [j for j in range(1, design.shape[1]) if j not in aliased]

        # C=inf: unpenalized fit
        logit = LogisticRegression(C=np.inf, max_iter=10000)
        logit.fit(X[:, [j - 1 for j in kept]], y)

        fit_design = design[:, [0] + kept]
        p = logit.predict_proba(X[:, [j - 1 for j in kept]])[:, 1]
        fisher = fit_design.T @ (fit_design * (p * (1 - p))[:, None])
        std_error = np.sqrt(np.diag(np.linalg.pinv(fisher)))
        coef = np.concatenate([logit.intercept_, logit.coef_.ravel()])
        z = coef / std_error

        names = ['(Intercept)'] + FEATURE_COLS
        table = pd.DataFrame(np.nan, index=names,
                             columns=['coefficient', 'std_error', 'z', 'p_value'])
        rows = [names[j] for j in [0] + kept]
        table.loc[rows, 'coefficient'] = coef
        table.loc[rows, 'std_error'] = std_error
        table.loc[rows, 'z'] = z
        table.loc[rows, 'p_value'] = 2 * norm.sf(np.abs(z))
        self.coefficients = table

        if len(kept) < n_features:
            raise ValueError(f"Only {len(kept)} measurements are estimable, cannot select {n_features}")
        candidates = table.drop(index='(Intercept)').dropna(subset=['p_value'])
        self.selected_features = candidates['p_value'].nsmallest(n_features).index.tolist()

        print(table.round(4).to_string())
        for name in (names[j] for j in aliased):
            print(f"   (aliased, not estimable: {name})")
        print(f"\n✓ Selected features: {', '.join(self.selected_features)}")
        return self.selected_features

    def split_data(self, test_size=TEST_SIZE):
        """Assign every observation to the train or test partition"""
        _banner("6. TRAIN-TEST SPLIT")
        if self.selected_features is None:
            raise RuntimeError("select_features() must run before split_data()")

        train_ids, test_ids = train_test_split(
            self.df_norm['id'], test_size=test_size,
            random_state=self.random_state, stratify=self.df_norm[TARGET_COL]
        )
        self.df_norm['partition'] = np.where(self.df_norm['id'].isin(test_ids), 'test', 'train')

        columns = ['id'] + self.selected_features + [TARGET_COL]
        self.train_df = self.df_norm.loc[self.df_norm['partition'] == 'train', columns].reset_index(drop=True)
        self.test_df = self.df_norm.loc[self.df_norm['partition'] == 'test', columns].reset_index(drop=True)

        print(f"✓ Train set: {len(self.train_df)} samples")
        print(f"✓ Test set:  {len(self.test_df)} samples")
        return self.train_df, self.test_df

    def _train_arrays(self):
        return (self.train_df[self.selected_features].to_numpy(),
                self.train_df[TARGET_COL].to_numpy(),
                self.test_df[self.selected_features].to_numpy())

    def run_unweighted_knn(self, k=K_NEIGHBORS):
        """Uniform-vote k-NN using all distance ties; tied votes go to a coin flip"""
        _banner(f"7. UNWEIGHTED k-NN (k={k}, all ties)")
        X_train, y_train, X_test = self._train_arrays()

        self.unweighted_model = UniformVoteKNN(n_neighbors=k, use_all=True,
                                               random_state=self.random_state)
        self.unweighted_model.fit(X_train, y_train)
        vote = self.unweighted_model.vote(X_test)

        self.unweighted_predictions = pd.DataFrame({
            'id': self.test_df['id'],
            'predicted': vote.labels,
            'vote_share': vote.vote_share,
            'tied': vote.tied,
            'n_voters': [len(members) for members in vote.neighbors],
        })
        self._unweighted_voters = dict(zip(self.test_df['id'], vote.neighbors))

        print(f"✓ Tied votes: {int(vote.tied.sum())} of {len(vote.tied)} test observations")
        print(f"✓ Observations with more than {k} voters: "
              f"{int((self.unweighted_predictions['n_voters'] > k).sum())}")
        return self.unweighted_predictions

    def run_weighted_knn(self, k=K_NEIGHBORS, kernel='optimal'):
        """Kernel-weighted k-NN on the same partition"""
        _banner(f"8. WEIGHTED k-NN (k={k}, kernel={kernel})")
        X_train, y_train, X_test = self._train_arrays()

        self.weighted_model = KernelWeightedKNN(n_neighbors=k, kernel=kernel)
        self.weighted_model.fit(X_train, y_train)
        proba = self.weighted_model.predict_proba(X_test)
        winners = np.argmax(proba, axis=1)
        classes = list(self.weighted_model.classes_)
        positive = classes.index(POSITIVE_CLASS) if POSITIVE_CLASS in classes else 0

        self.weighted_predictions = pd.DataFrame({
            'id': self.test_df['id'],
            'predicted': self.weighted_model.classes_[winners],
            'probability': proba[np.arange(len(winners)), winners],
            f'p_{POSITIVE_CLASS}': proba[:, positive],
        })

        top_counts = (proba == proba.max(axis=1, keepdims=True)).sum(axis=1)
        print(f"✓ Probability ties: {int((top_counts > 1).sum())} of {len(proba)} test observations")
        return self.weighted_predictions

    def compare_predictions(self):
        """Join both prediction sets to the test observations and compare them"""
        _banner("9. MODEL COMPARISON")
        if self.unweighted_predictions is None or self.weighted_predictions is None:
            raise RuntimeError("Both k-NN models must run before compare_predictions()")

        comparison = (self.test_df
                      .merge(self.unweighted_predictions, on='id')
                      .merge(self.weighted_predictions, on='id', suffixes=('_unweighted', '_weighted')))
        comparison['agree'] = comparison['predicted_unweighted'] == comparison['predicted_weighted']
        self.comparison = comparison

        labels = sorted(self.df[TARGET_COL].unique())
        results = {
            'accuracy_unweighted': accuracy_score(comparison[TARGET_COL], comparison['predicted_unweighted']),
            'accuracy_weighted': accuracy_score(comparison[TARGET_COL], comparison['predicted_weighted']),
            'confusion_unweighted': confusion_matrix(comparison[TARGET_COL],
                                                     comparison['predicted_unweighted'], labels=labels),
            'confusion_weighted': confusion_matrix(comparison[TARGET_COL],
                                                   comparison['predicted_weighted'], labels=labels),
            'crosstab': pd.crosstab(comparison['predicted_unweighted'], comparison['predicted_weighted'],
                                    rownames=['unweighted'], colnames=['weighted']),
            'tied_ids': comparison.loc[comparison['tied'], 'id'].tolist(),
            'disagreements': comparison.loc[~comparison['agree']],
        }

        print(f"\nAccuracy (unweighted): {results['accuracy_unweighted']*100:.2f}%")
        print(f"Accuracy (weighted):   {results['accuracy_weighted']*100:.2f}%")
        print("\nUnweighted vs weighted predictions:")
        print(results['crosstab'].to_string())
        print(f"\n✓ Tied observations: {results['tied_ids']}")
        print(f"✓ Disagreements: {len(results['disagreements'])}")
        if len(results['disagreements']):
            print(results['disagreements'][['id', TARGET_COL, 'predicted_unweighted', 'vote_share',
                                            'predicted_weighted', 'probability']].to_string(index=False))
        return results

    def tie_stability(self, n_repeats=TIE_REPEATS, k=K_NEIGHBORS):
        """Share of reruns, under different seeds, in which each test observation is called positive"""
        _banner("10. TIE STABILITY")
        X_train, y_train, X_test = self._train_arrays()

        calls = np.column_stack([
            UniformVoteKNN(n_neighbors=k, use_all=True, random_state=seed)
            .fit(X_train, y_train).predict(X_test) == POSITIVE_CLASS
            for seed in range(n_repeats)
        ])
        stability = pd.DataFrame({
            'id': self.test_df['id'],
            f'share_{POSITIVE_CLASS}': calls.mean(axis=1),
        })
        stability['flips'] = (calls.min(axis=1) != calls.max(axis=1))

        print(f"✓ {int(stability['flips'].sum())} observations changed label across {n_repeats} seeds")
        return stability

    def _plot_neighborhood(self, ax, row, voters, title, legend):
        f1, f2 = self.selected_features
        sns.scatterplot(data=self.train_df, x=f1, y=f2, hue=TARGET_COL, palette=CLASS_PALETTE,
                        s=25, alpha=0.5, ax=ax, legend=legend)
        for idx in voters:
            neighbor = self.train_df.iloc[idx]
            ax.plot([row[f1], neighbor[f1]], [row[f2], neighbor[f2]],
                    color='black', linestyle='--', linewidth=1)
            ax.scatter(neighbor[f1], neighbor[f2], s=90, facecolors='none',
                       edgecolors='black', linewidths=1.5)
        ax.scatter(row[f1], row[f2], marker='*', s=250,
                   color=CLASS_PALETTE.get(row[TARGET_COL], 'steelblue'), edgecolors='black', zorder=5)
        ax.set_title(title, fontsize=10, fontweight='bold')

    def plot_tied_observations(self, max_panels=12):
        """One panel per tied test observation showing its voters"""
        _banner("11. TIED OBSERVATIONS")
        if self.comparison is None:
            raise RuntimeError("compare_predictions() must run before plot_tied_observations()")

        tied = self.comparison[self.comparison['tied']].head(max_panels)
        if tied.empty:
            print("No tied observations to plot")
            return None

        ncols = min(3, len(tied))
        nrows = int(np.ceil(len(tied) / ncols))
        fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 4.5 * nrows), squeeze=False)
        for ax, (_, row) in zip(axes.ravel(), tied.iterrows()):
            title = (f"id {row['id']} (true {row[TARGET_COL]})\n"
                     f"uniform: {row['predicted_unweighted']} ({row['vote_share']:.2f}) | "
                     f"weighted: {row['predicted_weighted']} ({row['probability']:.2f})")
            self._plot_neighborhood(ax, row, self._unweighted_voters[row['id']], title,
                                    legend='auto' if ax is axes[0, 0] else False)
        for ax in axes.ravel()[len(tied):]:
            ax.set_visible(False)
        fig.suptitle(f'Tied Votes, k={self.unweighted_model.n_neighbors}', fontsize=16, fontweight='bold')
        return self._savefig('tied_observations.png')

    def plot_prediction_comparison(self):
        """Test set coloured by whether the two models agree"""
        if self.comparison is None:
            raise RuntimeError("compare_predictions() must run before plot_prediction_comparison()")
        f1, f2 = self.selected_features

        plot_df = self.comparison.assign(
            outcome=np.where(self.comparison['agree'], 'agree', 'disagree'),
            vote=np.where(self.comparison['tied'], 'tied', 'clear'),
        )
        fig, axes = plt.subplots(1, 2, figsize=(14, 6))
        sns.scatterplot(data=plot_df, x=f1, y=f2, hue='outcome', style='vote',
                        palette={'agree': 'steelblue', 'disagree': 'coral'}, s=70, ax=axes[0])
        axes[0].set_title('Unweighted vs Weighted Agreement', fontsize=14, fontweight='bold')

        accuracies = [accuracy_score(plot_df[TARGET_COL], plot_df['predicted_unweighted']) * 100,
                      accuracy_score(plot_df[TARGET_COL], plot_df['predicted_weighted']) * 100]
        bars = axes[1].bar(['Unweighted', 'Weighted'], accuracies,
                           color=['#3498db', '#e67e22'], edgecolor='black', linewidth=1.5)
        axes[1].set_ylabel('Test Accuracy (%)', fontweight='bold')
        axes[1].set_ylim([0, 105])
        axes[1].set_title('Test Accuracy', fontsize=14, fontweight='bold')
        for bar, acc in zip(bars, accuracies):
            axes[1].text(bar.get_x() + bar.get_width() / 2, bar.get_height() + 1,
                         f'{acc:.1f}%', ha='center', fontweight='bold')
        return self._savefig('prediction_comparison.png')


def main():
    """Main execution function"""
    print("\n" + "=" * 80)
    print(" " * 20 + "VERTEBRAL COLUMN CLASSIFICATION")
    print(" " * 15 + "Ties in unweighted and weighted k-NN (k=2)")
    print("=" * 80 + "\n")

    study = VertebralKNNStudy(data_path=DATA_PATH)

    study.load_data()
    study.exploratory_data_analysis()
    study.visualize_data()
    study.normalize_features()
    study.select_features(n_features=2)
    study.split_data()

    study.run_unweighted_knn()
    study.run_weighted_knn()
    results = study.compare_predictions()
    study.tie_stability()

    study.plot_tied_observations()
    study.plot_prediction_comparison()

    print("\n" + "=" * 80)
    print("ANALYSIS COMPLETE!")
    print("=" * 80)
    print("\nGenerated Files:")
    for f in study.generated_files:
        print(f"   ✓ {f}")

    print(f"\nUNWEIGHTED ACCURACY: {results['accuracy_unweighted']*100:.2f}%")
    print(f"WEIGHTED ACCURACY:   {results['accuracy_weighted']*100:.2f}%")
    print("=" * 80 + "\n")
    return results


if __name__ == "__main__":
    main()
